"""processed provider events ledger

Revision ID: 2026_10_19_0002
Revises: 2026_10_19_0001
Create Date: 2026-10-19 15:00:00.000000

Creates:
- processed_provider_events: idempotency ledger of provider deliveries
  applied to user_subscriptions
"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "2026_10_19_0002"
down_revision: str | None = "2026_10_19_0001"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "processed_provider_events",
        sa.Column("event_key", sa.String(length=255), nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("provider", sa.String(length=50), nullable=False),
        sa.Column("event_type", sa.String(length=100), nullable=True),
        sa.Column(
            "processed_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.PrimaryKeyConstraint("event_key"),
    )
    op.create_index(
        "ix_processed_provider_events_user_id", "processed_provider_events", ["user_id"]
    )
    op.create_index(
        "idx_processed_provider_events_processed_at",
        "processed_provider_events",
        ["processed_at"],
        postgresql_using="brin",
    )


def downgrade() -> None:
    op.drop_table("processed_provider_events")
