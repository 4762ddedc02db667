"""
API Routes - Provider webhooks, user sync and entitlement status.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from datetime import UTC, datetime

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from pydantic import ValidationError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from entitlements.api.dependencies import (
    get_billing_processor,
    get_current_caller,
    get_entitlement_query,
    get_event_authenticator,
    get_reconciler,
    get_stripe_event_processor,
)
from entitlements.config import settings
from entitlements.db.session import get_read_db
from entitlements.exceptions import InvalidInputError, UpstreamFailureError
from entitlements.models.api import (
    EntitlementStatusResponse,
    HealthResponse,
    RevenueCatWebhookRequest,
    SyncNativeSubscriptionRequest,
    SyncNativeSubscriptionResponse,
    WebhookAck,
)
from entitlements.models.domain import CallerIdentity
from entitlements.services.authenticator import EventAuthenticator, SecurityMode
from entitlements.services.billing_processor import BillingProcessor
from entitlements.services.classifier import classify_native_sync
from entitlements.services.entitlement_query import EntitlementQueryService
from entitlements.services.reconciler import SubscriptionReconciler
from entitlements.services.stripe_events import StripeEventProcessor

logger = get_logger(__name__)

router = APIRouter()


# =============================================================================
# Provider Webhooks
# =============================================================================


@router.post("/revenuecat-webhook", response_model=WebhookAck)
async def revenuecat_webhook(
    request: Request,
    authorization: str | None = Header(None),
    authenticator: EventAuthenticator = Depends(get_event_authenticator),
    reconciler: SubscriptionReconciler = Depends(get_reconciler),
) -> WebhookAck:
    """
    Handle RevenueCat webhook events (App Store and Google Play).

    The shared secret is checked before the body is read. Every accepted
    delivery is acknowledged, including no-ops and failed writes, so the
    aggregator does not retry into the same failure.
    """
    await authenticator.authorize(SecurityMode.AGGREGATOR_WEBHOOK, authorization)
    received_at = datetime.now(UTC)

    try:
        payload = RevenueCatWebhookRequest.model_validate(await request.json())
    except ValueError as exc:
        # ValidationError is a ValueError; so is a JSON decode error
        logger.warning("revenuecat_webhook_malformed", error=str(exc))
        detail = str(exc) if isinstance(exc, ValidationError) else "body must be JSON"
        raise InvalidInputError("event", detail) from exc

    event = payload.event
    logger.info(
        "revenuecat_webhook_received",
        event_id=event.id,
        event_type=event.type,
        user_id=event.app_user_id,
        store=event.store,
    )

    try:
        await reconciler.reconcile_revenuecat(event, received_at)
    except UpstreamFailureError as exc:
        # Needs manual reconciliation; the store has logged the write failure
        logger.error(
            "revenuecat_webhook_unapplied",
            event_id=event.id,
            event_type=event.type,
            user_id=event.app_user_id,
            error=exc.message,
        )

    return WebhookAck()


@router.post("/stripe-webhook", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    processor: BillingProcessor = Depends(get_billing_processor),
    events: StripeEventProcessor = Depends(get_stripe_event_processor),
) -> WebhookAck:
    """
    Handle Stripe webhook events for web checkout subscriptions.

    Processing failures return 500 so Stripe redelivers; redelivery is safe
    because the store ignores events that are not newer than the record.
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature", "")

    event = await processor.verify_webhook(payload, signature)
    logger.info("stripe_webhook_received", event_id=event.event_id, event_type=event.event_type)

    await events.process(event)
    return WebhookAck()


# =============================================================================
# User Endpoints (session JWT)
# =============================================================================


@router.post("/sync-native-subscription", response_model=SyncNativeSubscriptionResponse)
async def sync_native_subscription(
    request: SyncNativeSubscriptionRequest,
    authorization: str | None = Header(None),
    authenticator: EventAuthenticator = Depends(get_event_authenticator),
    reconciler: SubscriptionReconciler = Depends(get_reconciler),
) -> SyncNativeSubscriptionResponse:
    """
    Record a mobile purchase or restore reported by the app itself.

    The caller is always the target; there is no way to sync another user.
    """
    authorization_result = await authenticator.authorize(SecurityMode.USER_SYNC, authorization)
    user_id = authorization_result.caller_id or ""

    event = classify_native_sync(
        request.provider,
        request.expiration_date,
        now=datetime.now(UTC),
        default_period_days=settings.native_sync_default_period_days,
    )

    # The authoritative write must succeed; UpstreamFailureError surfaces as 500
    await reconciler.reconcile(user_id, event)

    logger.info(
        "native_subscription_synced",
        user_id=user_id,
        provider=event.provider,
        restored=request.restored,
    )
    return SyncNativeSubscriptionResponse(
        success=True,
        message="Subscription restored" if request.restored else "Subscription synced",
    )


@router.get("/subscription-status/{user_id}", response_model=EntitlementStatusResponse)
async def subscription_status(
    user_id: str,
    caller: CallerIdentity | None = Depends(get_current_caller),
    query: EntitlementQueryService = Depends(get_entitlement_query),
) -> EntitlementStatusResponse:
    """Entitlement of a user; callers may read their own, admins anyone's."""
    view = await query.get_status(caller, user_id)
    return EntitlementStatusResponse(
        has_subscription=view.has_subscription,
        provider=view.provider,
        status=view.status,
        tier=view.tier,
        is_premium=view.is_premium,
        expires_at=view.expires_at,
        cancelled_at=view.cancelled_at,
        product_id=view.product_id,
    )


# =============================================================================
# Health
# =============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_read_db)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"status": "unhealthy", "database": "disconnected", "error": str(exc)},
        ) from exc

    return HealthResponse(status="healthy", database="connected", version=settings.api_version)
