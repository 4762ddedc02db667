"""
Event Classifier - Maps provider events onto the canonical subscription tuple.

Pure functions: no I/O, no clock reads except through the `received_at` /
`now` arguments, so every mapping is reproducible in tests.
"""

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from structlog import get_logger

from entitlements.exceptions import InvalidInputError
from entitlements.models.api import (
    PaymentProvider,
    RevenueCatEvent,
    SubscriptionStatus,
    SubscriptionTier,
)
from entitlements.models.domain import CanonicalEvent

logger = get_logger(__name__)


@dataclass(frozen=True)
class EventMapping:
    """Status/tier/renewal triple an aggregator event type maps to."""

    status: SubscriptionStatus
    tier: SubscriptionTier
    is_renewal: bool = False


REVENUECAT_EVENT_MAP: dict[str, EventMapping] = {
    "INITIAL_PURCHASE": EventMapping(SubscriptionStatus.ACTIVE, SubscriptionTier.PREMIUM),
    "UNCANCELLATION": EventMapping(SubscriptionStatus.ACTIVE, SubscriptionTier.PREMIUM),
    "RENEWAL": EventMapping(SubscriptionStatus.ACTIVE, SubscriptionTier.PREMIUM, is_renewal=True),
    # Access continues until the period ends
    "CANCELLATION": EventMapping(SubscriptionStatus.CANCELLED, SubscriptionTier.PREMIUM),
    "EXPIRATION": EventMapping(SubscriptionStatus.EXPIRED, SubscriptionTier.FREE),
    # Grace period
    "BILLING_ISSUE": EventMapping(SubscriptionStatus.BILLING_ISSUE, SubscriptionTier.PREMIUM),
    "PRODUCT_CHANGE": EventMapping(SubscriptionStatus.ACTIVE, SubscriptionTier.PREMIUM),
}

STORE_PROVIDERS: dict[str, str] = {
    "APP_STORE": PaymentProvider.APPLE.value,
    "PLAY_STORE": PaymentProvider.GOOGLE.value,
}

NATIVE_SYNC_PROVIDERS = frozenset({PaymentProvider.APPLE.value, PaymentProvider.GOOGLE.value})


def from_epoch_millis(value: int | None) -> datetime | None:
    """Convert epoch milliseconds to an aware UTC datetime."""
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000, tz=UTC)


def store_to_provider(store: str | None) -> str:
    """
    Map an app-store identifier to a provider tag.

    Unknown stores are passed through verbatim so new stores are recorded
    rather than rejected.
    """
    if not store:
        return "unknown"
    return STORE_PROVIDERS.get(store, store)


def revenuecat_event_key(event: RevenueCatEvent) -> str:
    """
    Idempotency key for a RevenueCat delivery.

    Uses the event id when present. Otherwise the key is built from the
    delivered content, so a redelivery without id or timestamp maps to the
    same key while the next renewal (new expiration) does not.
    """
    if event.id:
        return f"revenuecat:{event.id}"
    return ":".join(
        [
            "revenuecat",
            event.type or "",
            event.app_user_id or "",
            event.product_id or "",
            str(event.expiration_at_ms or ""),
            str(event.event_timestamp_ms or ""),
        ]
    )


def classify_revenuecat_event(
    event: RevenueCatEvent, received_at: datetime | None = None
) -> CanonicalEvent | None:
    """
    Classify a RevenueCat event.

    Returns None for events that are acknowledged but not applied: no
    app_user_id, or an event type outside the mapping table.
    """
    if not event.app_user_id:
        logger.info("revenuecat_event_missing_user", event_type=event.type, event_id=event.id)
        return None

    mapping = REVENUECAT_EVENT_MAP.get(event.type or "")
    if mapping is None:
        logger.info("revenuecat_event_unhandled", event_type=event.type, event_id=event.id)
        return None

    event_time = from_epoch_millis(event.event_timestamp_ms) or received_at or datetime.now(UTC)

    if mapping.status == SubscriptionStatus.EXPIRED:
        period_end = None
    else:
        period_end = from_epoch_millis(event.expiration_at_ms)

    return CanonicalEvent(
        status=mapping.status,
        tier=mapping.tier,
        provider=store_to_provider(event.store),
        current_period_end=period_end,
        product_id=event.product_id,
        is_renewal=mapping.is_renewal,
        event_time=event_time,
        cancelled_at=event_time if mapping.status == SubscriptionStatus.CANCELLED else None,
        source_event_type=event.type,
        event_key=revenuecat_event_key(event),
    )


def classify_native_sync(
    provider: str | None,
    expiration_date: datetime | None,
    now: datetime,
    default_period_days: int = 30,
) -> CanonicalEvent:
    """
    Classify a client-reported mobile purchase or restore.

    Raises:
        InvalidInputError: provider is not apple or google
    """
    if provider not in NATIVE_SYNC_PROVIDERS:
        raise InvalidInputError("provider", f"must be one of apple, google (got {provider!r})")

    if expiration_date is not None and expiration_date.tzinfo is None:
        expiration_date = expiration_date.replace(tzinfo=UTC)

    return CanonicalEvent(
        status=SubscriptionStatus.ACTIVE,
        tier=SubscriptionTier.PREMIUM,
        provider=provider,
        current_period_end=expiration_date or now + timedelta(days=default_period_days),
        product_id=None,
        is_renewal=False,
        event_time=now,
        source_event_type="NATIVE_SYNC",
    )


def resolve_stripe_tier(
    price_id: str | None, price_tiers: dict[str, str], default_tier: str
) -> SubscriptionTier:
    """Map a Stripe price id to a tier, falling back to the configured default."""
    tier = price_tiers.get(price_id or "")
    if tier is None:
        logger.warning("stripe_price_unknown", price_id=price_id, default_tier=default_tier)
        tier = default_tier
    try:
        return SubscriptionTier(tier)
    except ValueError:
        # Legacy prices (e.g. an ad-free plan) carry no premium entitlement
        logger.warning("stripe_price_tier_unsupported", price_id=price_id, tier=tier)
        return SubscriptionTier.FREE


def classify_stripe_subscription(
    *,
    stripe_status: str,
    cancel_at_period_end: bool,
    tier: SubscriptionTier,
    price_id: str | None,
    current_period_end: datetime | None,
    canceled_at: datetime | None,
    event_time: datetime,
    event_type: str,
    is_renewal: bool = False,
    event_key: str | None = None,
) -> CanonicalEvent:
    """
    Classify a Stripe subscription object.

    `canceled` means the subscription is over; `cancel_at_period_end` keeps the
    tier until the period ends, like an aggregator CANCELLATION.
    """
    if stripe_status in ("canceled", "incomplete_expired"):
        return CanonicalEvent(
            status=SubscriptionStatus.EXPIRED,
            tier=SubscriptionTier.FREE,
            provider=PaymentProvider.STRIPE.value,
            current_period_end=None,
            product_id=price_id,
            is_renewal=False,
            event_time=event_time,
            cancelled_at=canceled_at,
            source_event_type=event_type,
            event_key=event_key,
        )

    if stripe_status in ("past_due", "unpaid", "incomplete"):
        status = SubscriptionStatus.BILLING_ISSUE
    elif cancel_at_period_end:
        status = SubscriptionStatus.CANCELLED
    elif stripe_status == "trialing":
        status = SubscriptionStatus.TRIALING
    else:
        status = SubscriptionStatus.ACTIVE

    return CanonicalEvent(
        status=status,
        tier=tier,
        provider=PaymentProvider.STRIPE.value,
        current_period_end=current_period_end,
        product_id=price_id,
        is_renewal=is_renewal,
        event_time=event_time,
        cancelled_at=canceled_at if status == SubscriptionStatus.CANCELLED else None,
        source_event_type=event_type,
        event_key=event_key,
    )
