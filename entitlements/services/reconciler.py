"""
Subscription Reconciler - classify -> apply -> propagate.

The cascade only runs when the store actually applied the event, so a
duplicate or stale delivery never repeats side effects such as a credit
reset.
"""

from datetime import datetime

from structlog import get_logger

from entitlements.exceptions import UpstreamFailureError
from entitlements.models.api import RevenueCatEvent
from entitlements.models.domain import CanonicalEvent, ReconcileOutcome
from entitlements.observability.logging import log_context
from entitlements.observability.metrics import metrics
from entitlements.observability.tracing import get_tracer
from entitlements.services.cascade import CascadePropagator
from entitlements.services.classifier import classify_revenuecat_event
from entitlements.services.reconciliation import ReconciliationStore

logger = get_logger(__name__)
tracer = get_tracer(__name__)


class SubscriptionReconciler:
    """Runs canonical events through the store and the cascade."""

    def __init__(self, store: ReconciliationStore, cascade: CascadePropagator) -> None:
        self.store = store
        self.cascade = cascade

    async def reconcile(self, user_id: str, event: CanonicalEvent) -> ReconcileOutcome:
        """
        Apply one canonical event and propagate it if it was applied.

        Raises:
            UpstreamFailureError: the authoritative write failed
        """
        with (
            log_context(user_id=user_id, provider=event.provider),
            tracer.start_as_current_span("reconcile_event") as span,
        ):
            span.set_attribute("user_id", user_id)
            span.set_attribute("provider", event.provider)
            span.set_attribute("event_type", event.source_event_type or "unknown")
            try:
                result = await self.store.apply_event(user_id, event)
            except UpstreamFailureError:
                metrics.record_provider_event(event.provider, event.source_event_type, "failed")
                raise

            metrics.record_provider_event(
                event.provider, event.source_event_type, result.outcome.value
            )
            span.set_attribute("outcome", result.outcome.value)

            cascade = None
            if result.applied:
                cascade = await self.cascade.propagate(user_id, event.tier, event.is_renewal)

        return ReconcileOutcome(user_id=user_id, event=event, result=result, cascade=cascade)

    async def reconcile_revenuecat(
        self, event: RevenueCatEvent, received_at: datetime | None = None
    ) -> ReconcileOutcome | None:
        """Classify and reconcile a RevenueCat event; None when it is a no-op."""
        canonical = classify_revenuecat_event(event, received_at)
        if canonical is None or event.app_user_id is None:
            metrics.record_provider_event("revenuecat", event.type, "ignored")
            return None

        logger.info(
            "revenuecat_event_classified",
            event_id=event.id,
            event_type=event.type,
            user_id=event.app_user_id,
            status=canonical.status.value,
            tier=canonical.tier.value,
        )
        return await self.reconcile(event.app_user_id, canonical)
