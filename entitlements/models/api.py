"""
API Models - Pydantic models for request/response validation.

Field aliases keep the wire format the mobile and web clients already send
(camelCase for the sync and refund endpoints, snake_case for provider payloads).
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class SubscriptionStatus(str, Enum):
    """Canonical subscription status."""

    ACTIVE = "active"
    TRIALING = "trialing"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    BILLING_ISSUE = "billing_issue"


class SubscriptionTier(str, Enum):
    """Entitlement tier."""

    FREE = "free"
    PREMIUM = "premium"
    PRO = "pro"


class PaymentProvider(str, Enum):
    """Billing backends the product knows about."""

    STRIPE = "stripe"
    APPLE = "apple"
    GOOGLE = "google"


ENTITLED_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING})
PREMIUM_TIERS = frozenset({SubscriptionTier.PREMIUM, SubscriptionTier.PRO})


# ============================================================================
# RevenueCat Webhook Models
# ============================================================================


class RevenueCatEvent(BaseModel):
    """The `event` object of a RevenueCat webhook delivery."""

    id: str | None = None
    type: str | None = None
    app_user_id: str | None = None
    product_id: str | None = None
    expiration_at_ms: int | None = None
    event_timestamp_ms: int | None = None
    store: str | None = None


class RevenueCatWebhookRequest(BaseModel):
    """POST /revenuecat-webhook request body."""

    event: RevenueCatEvent = Field(default_factory=RevenueCatEvent)


class WebhookAck(BaseModel):
    """Acknowledgement returned to providers for every accepted delivery."""

    received: bool = True


# ============================================================================
# Native Sync Models
# ============================================================================


class SyncNativeSubscriptionRequest(BaseModel):
    """POST /sync-native-subscription request body."""

    model_config = ConfigDict(populate_by_name=True)

    provider: str | None = None
    expiration_date: datetime | None = Field(None, alias="expirationDate")
    restored: bool = False


class SyncNativeSubscriptionResponse(BaseModel):
    """POST /sync-native-subscription response."""

    success: bool
    message: str


# ============================================================================
# Refund Models
# ============================================================================


class RefundRequest(BaseModel):
    """POST /refund-last-payment request body."""

    model_config = ConfigDict(populate_by_name=True)

    user_id: str | None = Field(None, alias="userId")


class RefundResponse(BaseModel):
    """POST /refund-last-payment response."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool
    refund_id: str = Field(..., serialization_alias="refundId")
    amount: float
    currency: str
    status: str


# ============================================================================
# Entitlement Status Models
# ============================================================================


class EntitlementStatusResponse(BaseModel):
    """GET /subscription-status/{user_id} response."""

    has_subscription: bool
    provider: str | None
    status: str
    tier: str
    is_premium: bool
    expires_at: datetime | None = None
    cancelled_at: datetime | None = None
    product_id: str | None = None


class HealthResponse(BaseModel):
    """GET /health response."""

    status: str
    database: str
    version: str


class ErrorResponse(BaseModel):
    """Machine-readable error body rendered for every EntitlementError."""

    error: str
    message: str
