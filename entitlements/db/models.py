"""
Database Models - SQLAlchemy ORM models with strict typing.

All columns use Mapped[] type annotations. User identifiers are the auth
provider's opaque ids, stored as strings.
"""

from datetime import UTC, datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class Profile(Base):
    """
    ORM model for profiles table.

    Owned by the product; this service reads the role and legacy Stripe
    columns and writes the denormalized entitlement columns.
    """

    __tablename__ = "profiles"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    role: Mapped[str] = mapped_column(String(20), nullable=False, default="user")

    # Denormalized entitlement
    subscription_tier: Mapped[str] = mapped_column(String(20), nullable=False, default="free")
    monthly_credits_total: Mapped[int] = mapped_column(Integer, nullable=False, default=15)
    credits_used_this_month: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    credits_reset_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Legacy Stripe fields (pre user_subscriptions)
    stripe_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    stripe_subscription_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    stripe_subscription_status: Mapped[str | None] = mapped_column(String(30), nullable=True)
    subscription_cancel_reason: Mapped[str | None] = mapped_column(String(50), nullable=True)
    subscription_start_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    subscription_end_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_payment_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_refunded_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    family_group_id: Mapped[UUID | None] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("family_groups.id", ondelete="SET NULL", use_alter=True),
        nullable=True,
    )

    updated_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("credits_used_this_month >= 0", name="ck_profiles_credits_non_negative"),
        Index("idx_profiles_stripe_customer_id", "stripe_customer_id"),
        Index("idx_profiles_family_group_id", "family_group_id"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<Profile(id={self.id}, role={self.role}, tier={self.subscription_tier})>"


class UserSubscription(Base):
    """
    ORM model for user_subscriptions table.

    Single row per user; the authoritative entitlement. Rows are never
    deleted, only transitioned.
    """

    __tablename__ = "user_subscriptions"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)

    # Store tags outside stripe/apple/google are kept verbatim
    payment_provider: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    tier: Mapped[str] = mapped_column(String(20), nullable=False)
    product_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    current_period_end: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Provider event time of the last applied event (ordering guard)
    last_event_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('active', 'trialing', 'cancelled', 'expired', 'billing_issue')",
            name="ck_user_subscriptions_status",
        ),
        CheckConstraint("tier IN ('free', 'premium', 'pro')", name="ck_user_subscriptions_tier"),
        Index("idx_user_subscriptions_provider", "payment_provider"),
        Index("idx_user_subscriptions_status", "status"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<UserSubscription(user_id={self.user_id}, provider={self.payment_provider}, "
            f"status={self.status}, tier={self.tier})>"
        )


class ProcessedProviderEvent(Base):
    """
    ORM model for processed_provider_events table.

    One row per provider delivery that reached the subscription store. The
    primary key is the delivery's idempotency key, so a redelivery of any
    earlier event is recognized regardless of its timestamp.
    """

    __tablename__ = "processed_provider_events"

    event_key: Mapped[str] = mapped_column(String(255), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    event_type: Mapped[str | None] = mapped_column(String(100), nullable=True)

    processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        Index(
            "idx_processed_provider_events_processed_at", "processed_at", postgresql_using="brin"
        ),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<ProcessedProviderEvent(event_key={self.event_key}, user_id={self.user_id})>"


class FamilyGroup(Base):
    """
    ORM model for family_groups table.

    One group per owner; the owner's subscription is shared with members.
    """

    __tablename__ = "family_groups"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    owner_id: Mapped[str] = mapped_column(
        String(255), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="My Family")
    credits_used_this_month: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<FamilyGroup(id={self.id}, owner_id={self.owner_id})>"


class FamilyMember(Base):
    """ORM model for family_members table."""

    __tablename__ = "family_members"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    family_group_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("family_groups.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[str] = mapped_column(
        String(255), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    role: Mapped[str] = mapped_column(String(20), nullable=False, default="member")

    created_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("status IN ('pending', 'approved')", name="ck_family_members_status"),
        CheckConstraint("role IN ('owner', 'member')", name="ck_family_members_role"),
        Index("idx_family_members_status", "status"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<FamilyMember(user_id={self.user_id}, group={self.family_group_id}, "
            f"status={self.status})>"
        )


class AdminAuditLog(Base):
    """
    ORM model for admin_audit_logs table.

    Immutable audit trail of manual financial interventions.
    """

    __tablename__ = "admin_audit_logs"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    admin_user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    action: Mapped[str] = mapped_column(String(100), nullable=False)
    resource_type: Mapped[str] = mapped_column(String(50), nullable=False)
    resource_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    changes: Mapped[dict[str, str] | None] = mapped_column(JSONB, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        Index("idx_admin_audit_logs_action", "action"),
        Index("idx_admin_audit_logs_created_at", "created_at", postgresql_using="brin"),
        Index("idx_admin_audit_logs_resource", "resource_type", "resource_id"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<AdminAuditLog(id={self.id}, action={self.action}, "
            f"resource={self.resource_type}/{self.resource_id})>"
        )
