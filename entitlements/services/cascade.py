"""
Cascade Propagator - Pushes an applied entitlement to dependent records.

Best effort and non-transactional: each step commits on its own, failures are
logged and counted, nothing already written is rolled back. A partially
failed cascade is repaired by the background reconciliation sweep.

Steps:
1. Owner profile tier (and credit reset on renewal)
2. Approved family members' tiers, only if step 1 succeeded
3. On renewal, the family group's shared credit counter
"""

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from entitlements.config import Settings
from entitlements.db.models import Profile, utc_now
from entitlements.models.api import SubscriptionTier
from entitlements.models.domain import CascadeReport
from entitlements.observability.metrics import metrics
from entitlements.services.family import FamilyMembership

logger = get_logger(__name__)


class CascadePropagator:
    """Propagates an owner's tier to their profile and family."""

    def __init__(
        self, session: AsyncSession, family: FamilyMembership, settings: Settings
    ) -> None:
        self.session = session
        self.family = family
        self.settings = settings

    async def propagate(
        self, user_id: str, tier: SubscriptionTier, is_renewal: bool
    ) -> CascadeReport:
        """Run the cascade. Never raises for storage failures."""
        report = CascadeReport(user_id=user_id, tier=tier, is_renewal=is_renewal)
        monthly_credits = self.settings.monthly_credits_for(tier.value)
        now = utc_now()

        # Step 1: owner profile
        values: dict[str, object] = {
            "subscription_tier": tier.value,
            "monthly_credits_total": monthly_credits,
        }
        if is_renewal:
            values["credits_used_this_month"] = 0
            values["credits_reset_date"] = now

        try:
            result = await self.session.execute(
                update(Profile).where(Profile.id == user_id).values(**values)
            )
            await self.session.commit()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            self._step_failed("profile", user_id, exc)
            return report

        if result.rowcount == 0:
            logger.warning("cascade_profile_missing", user_id=user_id)
            metrics.record_cascade_failure("profile")
            return report

        report.profile_updated = True
        report.credits_reset = is_renewal

        # Step 2: family members
        try:
            members = await self.family.list_members(user_id)
        except SQLAlchemyError as exc:
            await self.session.rollback()
            self._step_failed("family_lookup", user_id, exc)
            return report

        for member_id in members:
            try:
                await self.family.set_member_tier(member_id, tier.value, monthly_credits)
                if is_renewal:
                    await self.family.reset_member_credits(member_id, now)
                await self.session.commit()
            except SQLAlchemyError as exc:
                await self.session.rollback()
                report.members_failed.append(member_id)
                self._step_failed("member_tier", user_id, exc, member_id=member_id)
                continue
            report.members_synced.append(member_id)

        # Step 3: shared family counter
        if is_renewal:
            try:
                await self.family.reset_shared_credits(user_id)
                await self.session.commit()
                report.shared_credits_reset = True
            except SQLAlchemyError as exc:
                await self.session.rollback()
                self._step_failed("shared_credits", user_id, exc)

        logger.info(
            "cascade_completed",
            user_id=user_id,
            tier=tier.value,
            is_renewal=is_renewal,
            members_synced=len(report.members_synced),
            members_failed=len(report.members_failed),
            complete=report.complete,
        )
        return report

    def _step_failed(
        self, step: str, user_id: str, exc: Exception, member_id: str | None = None
    ) -> None:
        logger.error(
            "cascade_step_failed",
            step=step,
            user_id=user_id,
            member_id=member_id,
            error=str(exc),
        )
        metrics.record_cascade_failure(step)
