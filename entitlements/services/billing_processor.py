"""
Billing Processor - Provider-agnostic view of the card processor.

NO DICTIONARIES across the boundary - Stripe objects are converted to typed
snapshots here.

The processor is a capability: when Stripe is not configured the factory
returns UnavailableBillingProcessor, whose every call raises
BillingProviderUnavailableError (HTTP 503).
"""

import json
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Protocol

import stripe
from structlog import get_logger

from entitlements.config import Settings
from entitlements.exceptions import (
    BillingProviderUnavailableError,
    UpstreamFailureError,
    WebhookSecretNotConfiguredError,
    WebhookVerificationError,
)
from entitlements.models.domain import ChargeSummary, RefundSummary

logger = get_logger(__name__)

USER_ID_METADATA_KEY = "supabase_user_id"


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """The processor's view of one web subscription."""

    subscription_id: str
    customer_id: str | None
    status: str
    cancel_at_period_end: bool
    price_id: str | None
    current_period_end: datetime | None
    cancel_at: datetime | None
    canceled_at: datetime | None
    metadata_user_id: str | None


@dataclass(frozen=True)
class BillingWebhookEvent:
    """
    A verified processor webhook.

    `subscription` is populated for customer.subscription.* events; checkout
    sessions and invoices only reference the subscription by id.
    `billing_reason` is set for invoices: subscription_create for the first
    payment, subscription_cycle for a renewal.
    """

    event_id: str
    event_type: str
    created_at: datetime
    customer_id: str | None
    subscription_id: str | None
    metadata_user_id: str | None
    subscription: SubscriptionSnapshot | None = None
    billing_reason: str | None = None


def _from_epoch_seconds(value: int | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=UTC)


def _metadata_user_id(obj: Any) -> str | None:
    metadata = obj.get("metadata") or {}
    user_id: str | None = metadata.get(USER_ID_METADATA_KEY) or None
    return user_id


def snapshot_subscription(obj: Any) -> SubscriptionSnapshot:
    """Build a snapshot from a subscription payload or Stripe object."""
    items = (obj.get("items") or {}).get("data") or []
    first_item = items[0] if items else {}
    price = first_item.get("price") or {}
    period_end = obj.get("current_period_end") or first_item.get("current_period_end")

    return SubscriptionSnapshot(
        subscription_id=obj.get("id"),
        customer_id=obj.get("customer"),
        status=obj.get("status") or "",
        cancel_at_period_end=bool(obj.get("cancel_at_period_end")),
        price_id=price.get("id"),
        current_period_end=_from_epoch_seconds(period_end),
        cancel_at=_from_epoch_seconds(obj.get("cancel_at")),
        canceled_at=_from_epoch_seconds(obj.get("canceled_at")),
        metadata_user_id=_metadata_user_id(obj),
    )


def parse_webhook_event(event: dict[str, Any]) -> BillingWebhookEvent:
    """Parse a verified webhook payload into a typed event."""
    event_type = event.get("type") or ""
    data_object = (event.get("data") or {}).get("object") or {}

    subscription = None
    if event_type.startswith("customer.subscription."):
        subscription = snapshot_subscription(data_object)
        subscription_id = subscription.subscription_id
    else:
        subscription_id = data_object.get("subscription")

    metadata_user_id = _metadata_user_id(data_object)
    if event_type == "checkout.session.completed" and not metadata_user_id:
        metadata_user_id = data_object.get("client_reference_id")

    billing_reason = None
    if event_type.startswith("invoice."):
        billing_reason = data_object.get("billing_reason")

    return BillingWebhookEvent(
        event_id=event.get("id") or "",
        event_type=event_type,
        created_at=_from_epoch_seconds(event.get("created")) or datetime.now(UTC),
        customer_id=data_object.get("customer"),
        subscription_id=subscription_id,
        metadata_user_id=metadata_user_id,
        subscription=subscription,
        billing_reason=billing_reason,
    )


class BillingProcessor(Protocol):
    """
    Billing processor protocol.

    Any card processor used for web checkout must implement this interface.
    """

    async def latest_charge(self, customer_id: str) -> ChargeSummary | None:
        """
        Most recent charge for a customer.

        Raises:
            UpstreamFailureError: If the processor call fails
        """
        ...

    async def refund_charge(self, charge_id: str, reason: str) -> RefundSummary:
        """
        Refund a charge in full.

        Raises:
            UpstreamFailureError: If the refund call fails
        """
        ...

    async def retrieve_subscription(self, subscription_id: str) -> SubscriptionSnapshot:
        """
        Fetch a subscription by id.

        Raises:
            UpstreamFailureError: If the processor call fails
        """
        ...

    async def verify_webhook(self, payload: bytes, signature: str) -> BillingWebhookEvent:
        """
        Verify and parse a webhook delivery.

        Raises:
            WebhookVerificationError: If signature verification fails
        """
        ...


class StripeBillingProcessor:
    """
    Stripe billing processor implementation.

    Implements the BillingProcessor protocol for Stripe.
    """

    def __init__(self, api_key: str, webhook_secret: str) -> None:
        """
        Initialize Stripe processor.

        Args:
            api_key: Stripe secret API key
            webhook_secret: Stripe webhook signing secret
        """
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        stripe.api_key = api_key

    async def latest_charge(self, customer_id: str) -> ChargeSummary | None:
        try:
            logger.info("listing_stripe_charges", customer_id=customer_id)
            charges = stripe.Charge.list(customer=customer_id, limit=1)
        except stripe.StripeError as exc:
            logger.error("stripe_charge_list_failed", customer_id=customer_id, error=str(exc))
            raise UpstreamFailureError("stripe charge list", str(exc)) from exc

        if not charges.data:
            return None

        charge = charges.data[0]
        return ChargeSummary(
            charge_id=charge.id,
            amount_minor=charge.amount,
            currency=charge.currency,
            status=charge.status,
            refunded=bool(charge.refunded),
        )

    async def refund_charge(self, charge_id: str, reason: str) -> RefundSummary:
        try:
            logger.info("creating_stripe_refund", charge_id=charge_id, reason=reason)
            refund = stripe.Refund.create(charge=charge_id, reason=reason)
        except stripe.StripeError as exc:
            logger.error("stripe_refund_failed", charge_id=charge_id, error=str(exc))
            raise UpstreamFailureError("stripe refund", str(exc)) from exc

        logger.info(
            "stripe_refund_created",
            refund_id=refund.id,
            status=refund.status,
            amount_minor=refund.amount,
        )
        return RefundSummary(refund_id=refund.id, status=refund.status, amount_minor=refund.amount)

    async def retrieve_subscription(self, subscription_id: str) -> SubscriptionSnapshot:
        try:
            subscription = stripe.Subscription.retrieve(subscription_id)
        except stripe.StripeError as exc:
            logger.error(
                "stripe_subscription_retrieve_failed",
                subscription_id=subscription_id,
                error=str(exc),
            )
            raise UpstreamFailureError("stripe subscription retrieve", str(exc)) from exc

        return snapshot_subscription(subscription)

    async def verify_webhook(self, payload: bytes, signature: str) -> BillingWebhookEvent:
        if not self.webhook_secret:
            logger.error("stripe_webhook_secret_not_configured")
            raise WebhookSecretNotConfiguredError()

        if not signature:
            raise WebhookVerificationError("stripe", "missing stripe-signature header")

        try:
            stripe.Webhook.construct_event(  # type: ignore[no-untyped-call]
                payload, signature, self.webhook_secret
            )
        except stripe.SignatureVerificationError as exc:
            logger.error("stripe_webhook_verification_failed", error=str(exc))
            raise WebhookVerificationError("stripe", "invalid signature") from exc
        except ValueError as exc:
            logger.error("stripe_webhook_parsing_failed", error=str(exc))
            raise WebhookVerificationError("stripe", f"invalid payload: {exc}") from exc

        event = parse_webhook_event(json.loads(payload))
        logger.info("stripe_webhook_verified", event_id=event.event_id, event_type=event.event_type)
        return event


class UnavailableBillingProcessor:
    """Stand-in used when no processor is configured; every call fails with 503."""

    def __init__(self, provider: str, reason: str) -> None:
        self.provider = provider
        self.reason = reason

    def _unavailable(self) -> BillingProviderUnavailableError:
        logger.warning("billing_processor_unavailable", provider=self.provider, reason=self.reason)
        return BillingProviderUnavailableError(self.provider, self.reason)

    async def latest_charge(self, customer_id: str) -> ChargeSummary | None:
        raise self._unavailable()

    async def refund_charge(self, charge_id: str, reason: str) -> RefundSummary:
        raise self._unavailable()

    async def retrieve_subscription(self, subscription_id: str) -> SubscriptionSnapshot:
        raise self._unavailable()

    async def verify_webhook(self, payload: bytes, signature: str) -> BillingWebhookEvent:
        raise self._unavailable()


def build_billing_processor(settings: Settings) -> BillingProcessor:
    """Select the billing processor implementation from configuration."""
    if not settings.stripe_api_key:
        return UnavailableBillingProcessor("stripe", "STRIPE_API_KEY not configured")
    return StripeBillingProcessor(
        api_key=settings.stripe_api_key, webhook_secret=settings.stripe_webhook_secret
    )
