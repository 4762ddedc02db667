"""
Family Membership - Who shares an owner's subscription.

Only approved, non-owner members receive the owner's tier.
"""

from datetime import datetime
from typing import Protocol

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from entitlements.db.models import FamilyGroup, FamilyMember, Profile


class FamilyMembership(Protocol):
    """Family-plan collaborator used by the cascade."""

    async def list_members(self, owner_id: str) -> list[str]: ...

    async def set_member_tier(self, member_id: str, tier: str, monthly_credits: int) -> None: ...

    async def reset_member_credits(self, member_id: str, reset_at: datetime) -> None: ...

    async def reset_shared_credits(self, owner_id: str) -> None: ...


class SqlFamilyMembership:
    """
    FamilyMembership backed by family_groups / family_members.

    Statements run on the caller's session; the caller decides when to
    commit so each step can succeed or fail on its own.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def list_members(self, owner_id: str) -> list[str]:
        stmt = (
            select(FamilyMember.user_id)
            .join(FamilyGroup, FamilyGroup.id == FamilyMember.family_group_id)
            .where(
                FamilyGroup.owner_id == owner_id,
                FamilyMember.status == "approved",
                FamilyMember.role != "owner",
                FamilyMember.user_id != owner_id,
            )
            .order_by(FamilyMember.created_date)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def set_member_tier(self, member_id: str, tier: str, monthly_credits: int) -> None:
        await self.session.execute(
            update(Profile)
            .where(Profile.id == member_id)
            .values(subscription_tier=tier, monthly_credits_total=monthly_credits)
        )

    async def reset_member_credits(self, member_id: str, reset_at: datetime) -> None:
        await self.session.execute(
            update(Profile)
            .where(Profile.id == member_id)
            .values(credits_used_this_month=0, credits_reset_date=reset_at)
        )

    async def reset_shared_credits(self, owner_id: str) -> None:
        await self.session.execute(
            update(FamilyGroup).where(FamilyGroup.owner_id == owner_id).values(credits_used_this_month=0)
        )
