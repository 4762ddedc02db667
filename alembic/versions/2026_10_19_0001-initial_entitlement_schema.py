"""initial entitlement schema

Revision ID: 2026_10_19_0001
Revises:
Create Date: 2026-10-19 09:00:00.000000

Creates:
- profiles: user profile with denormalized entitlement and legacy Stripe fields
- family_groups / family_members: family plan sharing
- user_subscriptions: authoritative per-user subscription record
- admin_audit_logs: admin financial intervention trail
"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "2026_10_19_0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # Create profiles table
    op.create_table(
        "profiles",
        sa.Column("id", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("role", sa.String(length=20), nullable=False, server_default="user"),
        sa.Column("subscription_tier", sa.String(length=20), nullable=False, server_default="free"),
        sa.Column("monthly_credits_total", sa.Integer(), nullable=False, server_default="15"),
        sa.Column("credits_used_this_month", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("credits_reset_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("stripe_customer_id", sa.String(length=255), nullable=True),
        sa.Column("stripe_subscription_id", sa.String(length=255), nullable=True),
        sa.Column("stripe_subscription_status", sa.String(length=30), nullable=True),
        sa.Column("subscription_cancel_reason", sa.String(length=50), nullable=True),
        sa.Column("subscription_start_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("subscription_end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_payment_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_refunded_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("family_group_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column(
            "updated_date",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "credits_used_this_month >= 0", name="ck_profiles_credits_non_negative"
        ),
    )
    op.create_index("idx_profiles_stripe_customer_id", "profiles", ["stripe_customer_id"])
    op.create_index("idx_profiles_family_group_id", "profiles", ["family_group_id"])

    # Create family_groups table
    op.create_table(
        "family_groups",
        sa.Column(
            "id",
            postgresql.UUID(as_uuid=True),
            nullable=False,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column("owner_id", sa.String(length=255), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False, server_default="My Family"),
        sa.Column("credits_used_this_month", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "created_date",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.Column(
            "updated_date",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["owner_id"], ["profiles.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("owner_id", name="uq_family_groups_owner_id"),
    )

    # profiles <-> family_groups reference each other
    op.create_foreign_key(
        "fk_profiles_family_group_id",
        "profiles",
        "family_groups",
        ["family_group_id"],
        ["id"],
        ondelete="SET NULL",
    )

    # Create family_members table
    op.create_table(
        "family_members",
        sa.Column(
            "id",
            postgresql.UUID(as_uuid=True),
            nullable=False,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column("family_group_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("role", sa.String(length=20), nullable=False, server_default="member"),
        sa.Column(
            "created_date",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["family_group_id"], ["family_groups.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["user_id"], ["profiles.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("user_id", name="uq_family_members_user_id"),
        sa.CheckConstraint("status IN ('pending', 'approved')", name="ck_family_members_status"),
        sa.CheckConstraint("role IN ('owner', 'member')", name="ck_family_members_role"),
    )
    op.create_index(
        "ix_family_members_family_group_id", "family_members", ["family_group_id"]
    )
    op.create_index("idx_family_members_status", "family_members", ["status"])

    # Create user_subscriptions table
    op.create_table(
        "user_subscriptions",
        sa.Column(
            "id",
            postgresql.UUID(as_uuid=True),
            nullable=False,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("payment_provider", sa.String(length=50), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("tier", sa.String(length=20), nullable=False),
        sa.Column("product_id", sa.String(length=255), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_event_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", name="uq_user_subscriptions_user_id"),
        sa.CheckConstraint(
            "status IN ('active', 'trialing', 'cancelled', 'expired', 'billing_issue')",
            name="ck_user_subscriptions_status",
        ),
        sa.CheckConstraint(
            "tier IN ('free', 'premium', 'pro')", name="ck_user_subscriptions_tier"
        ),
    )
    op.create_index("idx_user_subscriptions_provider", "user_subscriptions", ["payment_provider"])
    op.create_index("idx_user_subscriptions_status", "user_subscriptions", ["status"])

    # Create admin_audit_logs table
    op.create_table(
        "admin_audit_logs",
        sa.Column(
            "id",
            postgresql.UUID(as_uuid=True),
            nullable=False,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column("admin_user_id", sa.String(length=255), nullable=False),
        sa.Column("action", sa.String(length=100), nullable=False),
        sa.Column("resource_type", sa.String(length=50), nullable=False),
        sa.Column("resource_id", sa.String(length=255), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("changes", postgresql.JSONB(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_admin_audit_logs_admin_user_id", "admin_audit_logs", ["admin_user_id"])
    op.create_index("idx_admin_audit_logs_action", "admin_audit_logs", ["action"])
    op.create_index(
        "idx_admin_audit_logs_created_at",
        "admin_audit_logs",
        ["created_at"],
        postgresql_using="brin",
    )
    op.create_index(
        "idx_admin_audit_logs_resource", "admin_audit_logs", ["resource_type", "resource_id"]
    )


def downgrade() -> None:
    op.drop_table("admin_audit_logs")
    op.drop_table("user_subscriptions")
    op.drop_table("family_members")
    op.drop_constraint("fk_profiles_family_group_id", "profiles", type_="foreignkey")
    op.drop_table("family_groups")
    op.drop_table("profiles")
