"""
Domain Models - Internal business logic models using dataclasses.

Immutable value objects passed between the classifier, the reconciliation
store, the cascade and the API layer.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from entitlements.models.api import (
    ENTITLED_STATUSES,
    PREMIUM_TIERS,
    SubscriptionStatus,
    SubscriptionTier,
)


@dataclass(frozen=True)
class CanonicalEvent:
    """
    Provider-agnostic subscription transition.

    Every classified event carries the full tuple, so applying it replaces the
    stored record wholesale. `event_key` identifies the provider delivery;
    None means the event is not a redeliverable webhook (native sync).
    """

    status: SubscriptionStatus
    tier: SubscriptionTier
    provider: str
    current_period_end: datetime | None
    product_id: str | None
    is_renewal: bool
    event_time: datetime
    cancelled_at: datetime | None = None
    source_event_type: str | None = None
    event_key: str | None = None

    def __post_init__(self) -> None:
        """Validate canonical event fields."""
        if not self.provider:
            raise ValueError("provider cannot be empty")
        if self.event_key is not None and not self.event_key:
            raise ValueError("event_key cannot be empty")
        if self.event_time.tzinfo is None:
            raise ValueError("event_time must be timezone-aware")
        if self.status == SubscriptionStatus.EXPIRED and self.current_period_end is not None:
            raise ValueError("expired subscriptions cannot carry a period end")


class ApplyOutcome(str, Enum):
    """Result of applying a canonical event to the subscription table."""

    APPLIED = "applied"
    DUPLICATE = "duplicate"
    STALE = "stale"


@dataclass(frozen=True)
class SubscriptionData:
    """Immutable snapshot of a user_subscriptions row."""

    user_id: str
    provider: str
    status: SubscriptionStatus
    tier: SubscriptionTier
    product_id: str | None
    current_period_end: datetime | None
    cancelled_at: datetime | None
    last_event_at: datetime | None
    updated_at: datetime


@dataclass(frozen=True)
class ApplyResult:
    """Outcome of ReconciliationStore.apply_event."""

    outcome: ApplyOutcome
    record: SubscriptionData | None

    @property
    def applied(self) -> bool:
        return self.outcome == ApplyOutcome.APPLIED


@dataclass
class CascadeReport:
    """What the best-effort cascade managed to write."""

    user_id: str
    tier: SubscriptionTier
    is_renewal: bool
    profile_updated: bool = False
    credits_reset: bool = False
    shared_credits_reset: bool = False
    members_synced: list[str] = field(default_factory=list)
    members_failed: list[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        """True when every step that should have run succeeded."""
        if not self.profile_updated or self.members_failed:
            return False
        return not self.is_renewal or self.shared_credits_reset


@dataclass(frozen=True)
class ReconcileOutcome:
    """Result of running one event through store and cascade."""

    user_id: str
    event: CanonicalEvent
    result: ApplyResult
    cascade: CascadeReport | None


@dataclass(frozen=True)
class CallerIdentity:
    """Authenticated caller resolved from a session token."""

    user_id: str
    email: str | None = None


@dataclass(frozen=True)
class EntitlementView:
    """Answer to "is this user entitled, and to what tier"."""

    has_subscription: bool
    provider: str | None
    status: str
    tier: str
    is_premium: bool
    expires_at: datetime | None = None
    cancelled_at: datetime | None = None
    product_id: str | None = None

    @classmethod
    def from_subscription(cls, record: SubscriptionData) -> "EntitlementView":
        return cls(
            has_subscription=record.status in ENTITLED_STATUSES,
            provider=record.provider,
            status=record.status.value,
            tier=record.tier.value,
            is_premium=record.tier in PREMIUM_TIERS,
            expires_at=record.current_period_end,
            cancelled_at=record.cancelled_at,
            product_id=record.product_id,
        )

    @classmethod
    def inactive(cls) -> "EntitlementView":
        return cls(
            has_subscription=False,
            provider=None,
            status="inactive",
            tier=SubscriptionTier.FREE.value,
            is_premium=False,
        )


@dataclass(frozen=True)
class ChargeSummary:
    """The billing processor's view of a single charge."""

    charge_id: str
    amount_minor: int
    currency: str
    status: str
    refunded: bool


@dataclass(frozen=True)
class RefundSummary:
    """The billing processor's view of an issued refund."""

    refund_id: str
    status: str
    amount_minor: int


@dataclass(frozen=True)
class RefundResult:
    """Outcome of a successful admin refund."""

    refund_id: str
    charge_id: str
    amount_minor: int
    currency: str
    status: str

    @property
    def amount_major(self) -> float:
        return self.amount_minor / 100
