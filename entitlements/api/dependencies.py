"""
FastAPI Dependencies - Authentication and service wiring.

NO DICTIONARIES - All dependencies return typed objects.
Collaborators receive configuration at construction; routes never read
settings for secrets themselves.
"""

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from entitlements.config import Settings, get_settings
from entitlements.db.session import get_read_db, get_write_db
from entitlements.models.domain import CallerIdentity
from entitlements.services.authenticator import (
    CallerAuthorizer,
    EventAuthenticator,
    ProfileRoleLookup,
    SessionTokenVerifier,
    WebhookAuthenticator,
    build_webhook_authenticator,
)
from entitlements.services.billing_processor import BillingProcessor, build_billing_processor
from entitlements.services.cascade import CascadePropagator
from entitlements.services.entitlement_query import EntitlementQueryService
from entitlements.services.family import SqlFamilyMembership
from entitlements.services.reconciler import SubscriptionReconciler
from entitlements.services.reconciliation import ReconciliationStore
from entitlements.services.refund import RefundWorkflow
from entitlements.services.stripe_events import StripeEventProcessor

# Bearer token scheme for session JWTs
bearer_scheme = HTTPBearer(auto_error=False)


# ============================================================================
# Authentication
# ============================================================================


def get_session_verifier(settings: Settings = Depends(get_settings)) -> SessionTokenVerifier:
    return SessionTokenVerifier(settings.auth_jwt_secret, settings.auth_jwt_audience)


def get_webhook_authenticator(settings: Settings = Depends(get_settings)) -> WebhookAuthenticator:
    """RevenueCat authenticator; rejects everything when no secret is configured."""
    return build_webhook_authenticator(settings.revenuecat_webhook_secret)


def get_caller_authorizer(db: AsyncSession = Depends(get_write_db)) -> CallerAuthorizer:
    return CallerAuthorizer(ProfileRoleLookup(db))


def get_event_authenticator(
    webhook: WebhookAuthenticator = Depends(get_webhook_authenticator),
    sessions: SessionTokenVerifier = Depends(get_session_verifier),
    callers: CallerAuthorizer = Depends(get_caller_authorizer),
) -> EventAuthenticator:
    return EventAuthenticator(webhook=webhook, sessions=sessions, callers=callers)


async def get_current_caller(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    sessions: SessionTokenVerifier = Depends(get_session_verifier),
) -> CallerIdentity | None:
    """
    Resolve the caller from `Authorization: Bearer <session jwt>`.

    Returns None without a header so services can apply their own check
    order; a header with a bad token is rejected here.

    Raises:
        UnauthenticatedError: token present but invalid or expired
    """
    if credentials is None:
        return None
    return sessions.verify(credentials.credentials)


# ============================================================================
# Services
# ============================================================================


def get_billing_processor(settings: Settings = Depends(get_settings)) -> BillingProcessor:
    return build_billing_processor(settings)


def get_reconciler(
    db: AsyncSession = Depends(get_write_db),
    settings: Settings = Depends(get_settings),
) -> SubscriptionReconciler:
    cascade = CascadePropagator(db, SqlFamilyMembership(db), settings)
    return SubscriptionReconciler(ReconciliationStore(db), cascade)


def get_entitlement_query(db: AsyncSession = Depends(get_read_db)) -> EntitlementQueryService:
    return EntitlementQueryService(db, CallerAuthorizer(ProfileRoleLookup(db)))


def get_refund_workflow(
    db: AsyncSession = Depends(get_write_db),
    callers: CallerAuthorizer = Depends(get_caller_authorizer),
    processor: BillingProcessor = Depends(get_billing_processor),
    reconciler: SubscriptionReconciler = Depends(get_reconciler),
) -> RefundWorkflow:
    return RefundWorkflow(db, callers, processor, reconciler)


def get_stripe_event_processor(
    db: AsyncSession = Depends(get_write_db),
    processor: BillingProcessor = Depends(get_billing_processor),
    reconciler: SubscriptionReconciler = Depends(get_reconciler),
    settings: Settings = Depends(get_settings),
) -> StripeEventProcessor:
    return StripeEventProcessor(db, processor, reconciler, settings)
