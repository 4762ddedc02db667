"""
Entitlement Query Service - "is this user entitled, and to what tier".

Reads user_subscriptions first, then the legacy Stripe columns on the
profile for users who subscribed before the table existed.
"""

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from entitlements.db.models import Profile
from entitlements.exceptions import UpstreamFailureError
from entitlements.models.api import PREMIUM_TIERS, PaymentProvider, SubscriptionTier
from entitlements.models.domain import CallerIdentity, EntitlementView
from entitlements.services.authenticator import CallerAuthorizer, SecurityMode
from entitlements.services.reconciliation import ReconciliationStore

logger = get_logger(__name__)


def legacy_view(profile: Profile) -> EntitlementView:
    """Entitlement derived from the pre-reconciliation profile columns."""
    tier = profile.subscription_tier or SubscriptionTier.FREE.value
    return EntitlementView(
        has_subscription=profile.stripe_subscription_id is not None,
        provider=PaymentProvider.STRIPE.value,
        status=profile.stripe_subscription_status or "inactive",
        tier=tier,
        is_premium=tier in {t.value for t in PREMIUM_TIERS},
        expires_at=profile.subscription_end_date,
    )


class EntitlementQueryService:
    """Self-or-admin entitlement lookups."""

    def __init__(self, session: AsyncSession, callers: CallerAuthorizer) -> None:
        self.session = session
        self.callers = callers
        self.store = ReconciliationStore(session)

    async def get_status(
        self, caller: CallerIdentity | None, target_user_id: str
    ) -> EntitlementView:
        """
        Get the entitlement of target_user_id.

        Raises:
            UnauthenticatedError: no caller
            ForbiddenError: caller is neither the target nor an admin
            UpstreamFailureError: storage read failed
        """
        await self.callers.authorize(SecurityMode.SELF_SERVICE, caller, target_user_id)

        record = await self.store.get(target_user_id)
        if record is not None:
            return EntitlementView.from_subscription(record)

        try:
            result = await self.session.execute(select(Profile).where(Profile.id == target_user_id))
        except SQLAlchemyError as exc:
            logger.error("profile_read_failed", user_id=target_user_id, error=str(exc))
            raise UpstreamFailureError("profile read", str(exc)) from exc

        profile = result.scalar_one_or_none()
        if profile is None:
            return EntitlementView.inactive()

        logger.debug("entitlement_from_legacy_profile", user_id=target_user_id)
        return legacy_view(profile)
