"""
Refund Workflow - Admin refund of a user's most recent web payment.

Preconditions are checked in a fixed order so callers always see the first
failing one:
1. caller authenticated
2. caller is admin
3. target profile exists and has a Stripe customer
4. subscription canceled or pending cancellation
5. latest charge exists, succeeded and is not already refunded

After the processor accepts the refund a web entitlement is revoked by
feeding an expired/free event through the normal reconciliation path. A
record owned by an app store is left alone.
"""

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from entitlements.db.models import AdminAuditLog, Profile, utc_now
from entitlements.exceptions import (
    InvalidInputError,
    InvalidStateError,
    NotFoundError,
    UpstreamFailureError,
)
from entitlements.models.api import PaymentProvider, SubscriptionStatus, SubscriptionTier
from entitlements.models.domain import CallerIdentity, CanonicalEvent, RefundResult
from entitlements.observability.metrics import metrics
from entitlements.services.authenticator import CallerAuthorizer, SecurityMode
from entitlements.services.billing_processor import BillingProcessor
from entitlements.services.reconciler import SubscriptionReconciler

logger = get_logger(__name__)

REFUND_REASON = "requested_by_customer"
ACCEPTED_REFUND_STATUSES = frozenset({"succeeded", "pending"})


class RefundWorkflow:
    """Admin-only refund of the last charge."""

    def __init__(
        self,
        session: AsyncSession,
        callers: CallerAuthorizer,
        processor: BillingProcessor,
        reconciler: SubscriptionReconciler,
    ) -> None:
        self.session = session
        self.callers = callers
        self.processor = processor
        self.reconciler = reconciler

    async def refund_last_payment(
        self, caller: CallerIdentity | None, target_user_id: str | None
    ) -> RefundResult:
        """
        Refund the target user's latest charge.

        Raises:
            UnauthenticatedError: no caller
            ForbiddenError: caller is not an admin
            InvalidInputError: no target user id
            NotFoundError: no profile, or no charge for the customer
            InvalidStateError: no customer, subscription still live, or charge
                not refundable
            UpstreamFailureError: processor call failed or refund was rejected
        """
        authorization = await self.callers.authorize(SecurityMode.ADMIN_OPERATION, caller)
        admin_id = authorization.caller_id or ""

        if not target_user_id:
            raise InvalidInputError("userId", "is required")

        profile = await self._load_profile(target_user_id)
        if profile is None:
            raise NotFoundError("user", target_user_id)
        if not profile.stripe_customer_id:
            raise InvalidStateError("No Stripe customer found for this user")

        is_canceled = profile.stripe_subscription_status == "canceled"
        is_pending_cancel = profile.subscription_cancel_reason == "pending_cancel"
        if not is_canceled and not is_pending_cancel:
            raise InvalidStateError(
                "Refund only allowed for canceled or pending cancellation subscriptions"
            )

        charge = await self.processor.latest_charge(profile.stripe_customer_id)
        if charge is None:
            raise NotFoundError("charge", profile.stripe_customer_id)
        if charge.refunded:
            raise InvalidStateError("This payment has already been refunded")
        if charge.status != "succeeded":
            raise InvalidStateError("Last charge was not successful and cannot be refunded")

        refund = await self.processor.refund_charge(charge.charge_id, REFUND_REASON)
        if refund.status not in ACCEPTED_REFUND_STATUSES:
            metrics.record_refund("rejected")
            logger.error(
                "refund_rejected",
                admin_id=admin_id,
                user_id=target_user_id,
                charge_id=charge.charge_id,
                refund_id=refund.refund_id,
                status=refund.status,
            )
            raise UpstreamFailureError("refund", f"refund failed with status: {refund.status}")

        result = RefundResult(
            refund_id=refund.refund_id,
            charge_id=charge.charge_id,
            amount_minor=charge.amount_minor,
            currency=charge.currency,
            status=refund.status,
        )
        metrics.record_refund(refund.status, charge.amount_minor)
        logger.info(
            "refund_processed",
            admin_id=admin_id,
            user_id=target_user_id,
            charge_id=charge.charge_id,
            refund_id=refund.refund_id,
            amount_minor=charge.amount_minor,
            currency=charge.currency,
        )

        # The money has moved; bookkeeping failures are logged, not surfaced
        await self._record_refund(admin_id, target_user_id, profile.email, result)
        await self._revoke_entitlement(target_user_id, refund.refund_id)
        return result

    async def _load_profile(self, user_id: str) -> Profile | None:
        try:
            result = await self.session.execute(select(Profile).where(Profile.id == user_id))
        except SQLAlchemyError as exc:
            logger.error("profile_read_failed", user_id=user_id, error=str(exc))
            raise UpstreamFailureError("profile read", str(exc)) from exc
        profile: Profile | None = result.scalar_one_or_none()
        return profile

    async def _record_refund(
        self, admin_id: str, user_id: str, email: str | None, result: RefundResult
    ) -> None:
        now = utc_now()
        try:
            await self.session.execute(
                update(Profile)
                .where(Profile.id == user_id)
                .values(last_refunded_date=now, updated_date=now)
            )
            self.session.add(
                AdminAuditLog(
                    admin_user_id=admin_id,
                    action="refund_last_payment",
                    resource_type="profile",
                    resource_id=user_id,
                    description=(
                        f"Refunded {result.amount_major:.2f} {result.currency.upper()} "
                        f"for {email or user_id}"
                    ),
                    changes={
                        "refund_id": result.refund_id,
                        "charge_id": result.charge_id,
                        "amount_minor": str(result.amount_minor),
                        "currency": result.currency,
                        "status": result.status,
                    },
                )
            )
            await self.session.commit()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            logger.error(
                "refund_audit_failed",
                admin_id=admin_id,
                user_id=user_id,
                refund_id=result.refund_id,
                error=str(exc),
            )

    async def _revoke_entitlement(self, user_id: str, refund_id: str) -> None:
        try:
            record = await self.reconciler.store.get(user_id)
        except UpstreamFailureError as exc:
            logger.error("refund_entitlement_revoke_failed", user_id=user_id, error=exc.message)
            return

        # Only the web subscription was refunded; a store subscription stays
        if record is not None and record.provider != PaymentProvider.STRIPE.value:
            logger.warning(
                "refund_entitlement_revoke_skipped",
                user_id=user_id,
                refund_id=refund_id,
                provider=record.provider,
                status=record.status.value,
            )
            return

        now = utc_now()
        event = CanonicalEvent(
            status=SubscriptionStatus.EXPIRED,
            tier=SubscriptionTier.FREE,
            provider=PaymentProvider.STRIPE.value,
            current_period_end=None,
            product_id=None,
            is_renewal=False,
            event_time=now,
            cancelled_at=now,
            source_event_type="ADMIN_REFUND",
            event_key=f"refund:{refund_id}",
        )
        try:
            await self.reconciler.reconcile(user_id, event)
        except UpstreamFailureError as exc:
            logger.error("refund_entitlement_revoke_failed", user_id=user_id, error=exc.message)
