"""
Stripe Event Processor - Web checkout subscriptions.

Handles the webhook events web checkout produces:
- checkout.session.completed: new subscription
- customer.subscription.updated / .deleted: plan changes, cancellations
- invoice.payment_succeeded: invoice paid (a renewal when billing_reason is subscription_cycle)
- invoice.payment_failed: payment retry in progress

Each event is reconciled into user_subscriptions first. The legacy Stripe
columns on the profile (read by the refund workflow and older clients) are
only written while that record still holds the event's state, so a stale
delivery cannot roll them back.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from entitlements.config import Settings
from entitlements.db.models import Profile, utc_now
from entitlements.exceptions import UpstreamFailureError
from entitlements.models.domain import ApplyOutcome, ReconcileOutcome
from entitlements.observability.metrics import metrics
from entitlements.services.billing_processor import (
    BillingProcessor,
    BillingWebhookEvent,
    SubscriptionSnapshot,
)
from entitlements.services.classifier import classify_stripe_subscription, resolve_stripe_tier
from entitlements.services.reconciler import SubscriptionReconciler

logger = get_logger(__name__)

HANDLED_EVENT_TYPES = frozenset(
    {
        "checkout.session.completed",
        "customer.subscription.updated",
        "customer.subscription.deleted",
        "invoice.payment_succeeded",
        "invoice.payment_failed",
    }
)

# Invoices for the first period carry subscription_create
RENEWAL_BILLING_REASON = "subscription_cycle"


def is_renewal_invoice(event: BillingWebhookEvent) -> bool:
    """A paid invoice for a new billing period of an existing subscription."""
    return (
        event.event_type == "invoice.payment_succeeded"
        and event.billing_reason == RENEWAL_BILLING_REASON
    )


def holds_event_state(outcome: ReconcileOutcome) -> bool:
    """
    True when user_subscriptions now reflects this event.

    A redelivery of the latest applied event still counts, so a retry after
    a failed profile write completes it.
    """
    result = outcome.result
    if result.applied:
        return True
    return (
        result.outcome == ApplyOutcome.DUPLICATE
        and result.record is not None
        and result.record.last_event_at == outcome.event.event_time
    )


class StripeEventProcessor:
    """Turns verified Stripe webhooks into reconciled entitlements."""

    def __init__(
        self,
        session: AsyncSession,
        processor: BillingProcessor,
        reconciler: SubscriptionReconciler,
        settings: Settings,
    ) -> None:
        self.session = session
        self.processor = processor
        self.reconciler = reconciler
        self.settings = settings

    async def process(self, event: BillingWebhookEvent) -> ReconcileOutcome | None:
        """
        Process one verified event. Returns None when nothing was reconciled.

        Raises:
            UpstreamFailureError: processor or storage call failed
        """
        if event.event_type not in HANDLED_EVENT_TYPES:
            logger.info("stripe_webhook_ignored", event_id=event.event_id, event_type=event.event_type)
            metrics.record_provider_event("stripe", event.event_type, "ignored")
            return None

        subscription = event.subscription
        if subscription is None:
            if not event.subscription_id:
                logger.info(
                    "stripe_event_without_subscription",
                    event_id=event.event_id,
                    event_type=event.event_type,
                )
                metrics.record_provider_event("stripe", event.event_type, "ignored")
                return None
            subscription = await self.processor.retrieve_subscription(event.subscription_id)

        customer_id = event.customer_id or subscription.customer_id
        user_id = await self.resolve_user_id(
            event.metadata_user_id or subscription.metadata_user_id, customer_id
        )
        if user_id is None:
            logger.error(
                "stripe_user_unresolved",
                event_id=event.event_id,
                event_type=event.event_type,
                customer_id=customer_id,
            )
            metrics.record_provider_event("stripe", event.event_type, "unresolved")
            return None

        tier = resolve_stripe_tier(
            subscription.price_id,
            self.settings.stripe_price_tiers,
            self.settings.stripe_default_tier,
        )

        stripe_status = subscription.status
        if event.event_type == "customer.subscription.deleted":
            stripe_status = "canceled"
        elif event.event_type == "invoice.payment_failed":
            stripe_status = "past_due"

        canonical = classify_stripe_subscription(
            stripe_status=stripe_status,
            cancel_at_period_end=subscription.cancel_at_period_end,
            tier=tier,
            price_id=subscription.price_id,
            current_period_end=subscription.current_period_end,
            canceled_at=subscription.canceled_at,
            event_time=event.created_at,
            event_type=event.event_type,
            is_renewal=is_renewal_invoice(event),
            event_key=f"stripe:{event.event_id}" if event.event_id else None,
        )
        outcome = await self.reconciler.reconcile(user_id, canonical)

        await self._update_legacy_profile(
            user_id,
            customer_id,
            event,
            subscription,
            stripe_status,
            current=holds_event_state(outcome),
        )
        return outcome

    async def resolve_user_id(self, metadata_user_id: str | None, customer_id: str | None) -> str | None:
        """Metadata first, then the profile holding the Stripe customer id."""
        if metadata_user_id:
            return metadata_user_id
        if not customer_id:
            return None

        try:
            result = await self.session.execute(
                select(Profile.id).where(Profile.stripe_customer_id == customer_id).limit(1)
            )
        except SQLAlchemyError as exc:
            logger.error("stripe_customer_lookup_failed", customer_id=customer_id, error=str(exc))
            raise UpstreamFailureError("stripe customer lookup", str(exc)) from exc

        user_id: str | None = result.scalar_one_or_none()
        return user_id

    async def _update_legacy_profile(
        self,
        user_id: str,
        customer_id: str | None,
        event: BillingWebhookEvent,
        subscription: SubscriptionSnapshot,
        stripe_status: str,
        current: bool,
    ) -> None:
        if current:
            values = self._legacy_values(customer_id, event, subscription, stripe_status, utc_now())
        elif event.event_type == "checkout.session.completed" and customer_id:
            # The customer link never goes stale; status columns follow the record
            values = {"stripe_customer_id": customer_id}
        else:
            logger.info(
                "stripe_profile_update_skipped",
                user_id=user_id,
                event_id=event.event_id,
                event_type=event.event_type,
            )
            return

        try:
            await self.session.execute(update(Profile).where(Profile.id == user_id).values(**values))
            await self.session.commit()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            logger.error(
                "stripe_profile_update_failed",
                user_id=user_id,
                event_type=event.event_type,
                error=str(exc),
            )
            raise UpstreamFailureError("profile update", str(exc)) from exc

    @staticmethod
    def _legacy_values(
        customer_id: str | None,
        event: BillingWebhookEvent,
        subscription: SubscriptionSnapshot,
        stripe_status: str,
        now: datetime,
    ) -> dict[str, Any]:
        if event.event_type == "checkout.session.completed":
            return {
                "stripe_customer_id": customer_id,
                "stripe_subscription_id": subscription.subscription_id,
                "stripe_subscription_status": stripe_status,
                "subscription_cancel_reason": None,
                "subscription_start_date": now,
                "last_payment_date": now,
            }

        if event.event_type == "invoice.payment_succeeded":
            return {"last_payment_date": now}

        if event.event_type == "invoice.payment_failed":
            return {"stripe_subscription_status": stripe_status}

        if stripe_status == "canceled":
            return {
                "stripe_subscription_id": None,
                "stripe_subscription_status": "canceled",
                "subscription_end_date": now,
            }

        if subscription.cancel_at_period_end:
            # Status stays as reported; the reason marks the pending cancel
            return {
                "stripe_subscription_status": stripe_status,
                "subscription_cancel_reason": "pending_cancel",
                "subscription_end_date": subscription.cancel_at or subscription.current_period_end,
            }

        return {
            "stripe_subscription_status": stripe_status,
            "subscription_cancel_reason": None,
            "subscription_end_date": None,
        }
