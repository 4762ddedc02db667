"""
Reconciliation Store - The authoritative per-user subscription record.

Every write is a single INSERT ... ON CONFLICT (user_id) DO UPDATE that
replaces the whole canonical tuple, guarded by the provider event time:
the row is only overwritten when the stored event is not newer. Keyed
deliveries are first claimed in processed_provider_events, in the same
transaction, so a redelivery is a no-op whatever its timestamp says.
"""

from datetime import datetime

from sqlalchemy import or_, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from entitlements.db.models import ProcessedProviderEvent, UserSubscription, utc_now
from entitlements.exceptions import UpstreamFailureError
from entitlements.models.api import SubscriptionStatus, SubscriptionTier
from entitlements.models.domain import (
    ApplyOutcome,
    ApplyResult,
    CanonicalEvent,
    SubscriptionData,
)

logger = get_logger(__name__)


def to_subscription_data(row: UserSubscription) -> SubscriptionData:
    """Convert an ORM row to an immutable snapshot."""
    return SubscriptionData(
        user_id=row.user_id,
        provider=row.payment_provider,
        status=SubscriptionStatus(row.status),
        tier=SubscriptionTier(row.tier),
        product_id=row.product_id,
        current_period_end=row.current_period_end,
        cancelled_at=row.cancelled_at,
        last_event_at=row.last_event_at,
        updated_at=row.updated_at,
    )


class ReconciliationStore:
    """Reads and conditionally writes user_subscriptions rows."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, user_id: str) -> SubscriptionData | None:
        """Read the current record for a user, if any."""
        try:
            result = await self.session.execute(
                select(UserSubscription).where(UserSubscription.user_id == user_id)
            )
        except SQLAlchemyError as exc:
            logger.error("subscription_read_failed", user_id=user_id, error=str(exc))
            raise UpstreamFailureError("subscription read", str(exc)) from exc

        row = result.scalar_one_or_none()
        return to_subscription_data(row) if row else None

    async def apply_event(self, user_id: str, event: CanonicalEvent) -> ApplyResult:
        """
        Apply a canonical event to the user's record.

        Returns DUPLICATE when the event's key is already in the processed
        ledger, STALE when the stored event is strictly newer, and APPLIED
        otherwise. Events with equal times but different keys are distinct
        deliveries; the later arrival is applied. The ledger row and the
        upsert commit together, so a failed write leaves the event retryable.

        Raises:
            UpstreamFailureError: the write could not be completed
        """
        now = utc_now()
        values = {
            "payment_provider": event.provider,
            "status": event.status.value,
            "tier": event.tier.value,
            "product_id": event.product_id,
            "current_period_end": event.current_period_end,
            "cancelled_at": event.cancelled_at,
            "last_event_at": event.event_time,
            "updated_at": now,
        }

        insert_stmt = pg_insert(UserSubscription).values(user_id=user_id, created_at=now, **values)
        stmt = insert_stmt.on_conflict_do_update(
            index_elements=[UserSubscription.user_id],
            set_=values,
            where=or_(
                UserSubscription.last_event_at.is_(None),
                UserSubscription.last_event_at <= insert_stmt.excluded.last_event_at,
            ),
        ).returning(UserSubscription)

        try:
            if event.event_key is not None and not await self._claim_event(user_id, event, now):
                await self.session.rollback()
                stored = await self.get(user_id)
                logger.info(
                    "subscription_event_duplicate",
                    user_id=user_id,
                    event_key=event.event_key,
                    event_type=event.source_event_type,
                )
                return ApplyResult(outcome=ApplyOutcome.DUPLICATE, record=stored)

            result = await self.session.execute(stmt)
            row = result.scalar_one_or_none()
            await self.session.commit()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            logger.error(
                "subscription_write_failed",
                user_id=user_id,
                provider=event.provider,
                status=event.status.value,
                error=str(exc),
            )
            raise UpstreamFailureError("subscription write", str(exc)) from exc

        if row is not None:
            record = to_subscription_data(row)
            logger.info(
                "subscription_applied",
                user_id=user_id,
                provider=record.provider,
                status=record.status.value,
                tier=record.tier.value,
                event_key=event.event_key,
                event_time=event.event_time.isoformat(),
            )
            return ApplyResult(outcome=ApplyOutcome.APPLIED, record=record)

        # Guard rejected the update; the stored event is strictly newer
        stored = await self.get(user_id)
        logger.warning(
            "subscription_event_stale",
            user_id=user_id,
            event_key=event.event_key,
            event_time=event.event_time.isoformat(),
            stored_event_time=(
                stored.last_event_at.isoformat() if stored and stored.last_event_at else None
            ),
            incoming_status=event.status.value,
        )
        return ApplyResult(outcome=ApplyOutcome.STALE, record=stored)

    async def _claim_event(self, user_id: str, event: CanonicalEvent, now: datetime) -> bool:
        """Record the event key in the ledger; False when it was already there."""
        stmt = (
            pg_insert(ProcessedProviderEvent)
            .values(
                event_key=event.event_key,
                user_id=user_id,
                provider=event.provider,
                event_type=event.source_event_type,
                processed_at=now,
            )
            .on_conflict_do_nothing(index_elements=[ProcessedProviderEvent.event_key])
            .returning(ProcessedProviderEvent.event_key)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none() is not None
