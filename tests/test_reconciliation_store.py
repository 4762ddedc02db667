"""
Tests for the reconciliation store.

The upsert itself runs in PostgreSQL; these tests check the statement shape
and how the store interprets what comes back.
"""

from datetime import UTC, datetime, timedelta

import pytest
from conftest import USER_ID, create_mock_subscription_row, make_event, make_result
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import SQLAlchemyError

from entitlements.exceptions import UpstreamFailureError
from entitlements.models.api import SubscriptionStatus, SubscriptionTier
from entitlements.models.domain import ApplyOutcome
from entitlements.services.reconciliation import ReconciliationStore, to_subscription_data

EVENT_TIME = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


class TestApplyEvent:
    async def test_applied_when_row_returned(self, db_session):
        row = create_mock_subscription_row(last_event_at=EVENT_TIME)
        db_session.execute.return_value = make_result(scalar=row)

        result = await ReconciliationStore(db_session).apply_event(
            USER_ID, make_event(event_time=EVENT_TIME)
        )

        assert result.outcome == ApplyOutcome.APPLIED
        assert result.applied is True
        assert result.record is not None
        assert result.record.status == SubscriptionStatus.ACTIVE
        assert result.record.tier == SubscriptionTier.PREMIUM
        db_session.commit.assert_awaited_once()

    async def test_claims_key_then_upserts_in_one_transaction(self, db_session):
        row = create_mock_subscription_row(last_event_at=EVENT_TIME)
        db_session.execute.side_effect = [
            make_result(scalar="revenuecat:evt-1"),
            make_result(scalar=row),
        ]

        result = await ReconciliationStore(db_session).apply_event(
            USER_ID, make_event(event_time=EVENT_TIME, event_key="revenuecat:evt-1")
        )

        assert result.outcome == ApplyOutcome.APPLIED
        claim, upsert = (call.args[0] for call in db_session.execute.await_args_list)
        claim_sql = str(claim.compile(dialect=postgresql.dialect()))
        assert "INSERT INTO processed_provider_events" in claim_sql
        assert "ON CONFLICT (event_key) DO NOTHING" in claim_sql
        assert claim.compile(dialect=postgresql.dialect()).params["event_key"] == "revenuecat:evt-1"
        assert "INSERT INTO user_subscriptions" in str(upsert.compile(dialect=postgresql.dialect()))
        db_session.commit.assert_awaited_once()

    async def test_duplicate_when_key_already_processed(self, db_session):
        stored = create_mock_subscription_row(last_event_at=EVENT_TIME)
        db_session.execute.side_effect = [make_result(scalar=None), make_result(scalar=stored)]

        result = await ReconciliationStore(db_session).apply_event(
            USER_ID,
            make_event(
                event_time=EVENT_TIME + timedelta(seconds=30),
                is_renewal=True,
                event_key="revenuecat:evt-1",
            ),
        )

        assert result.outcome == ApplyOutcome.DUPLICATE
        assert result.applied is False
        assert result.record is not None
        assert result.record.last_event_at == EVENT_TIME
        assert db_session.execute.await_count == 2
        db_session.commit.assert_not_awaited()
        db_session.rollback.assert_awaited_once()

    async def test_equal_time_different_event_applies(self, db_session):
        """A renewal sharing a second with the prior update is a distinct event."""
        row = create_mock_subscription_row(last_event_at=EVENT_TIME)
        db_session.execute.side_effect = [
            make_result(scalar="stripe:evt_2"),
            make_result(scalar=row),
        ]

        result = await ReconciliationStore(db_session).apply_event(
            USER_ID,
            make_event(
                provider="stripe",
                event_time=EVENT_TIME,
                is_renewal=True,
                source_event_type="invoice.payment_succeeded",
                event_key="stripe:evt_2",
            ),
        )

        assert result.outcome == ApplyOutcome.APPLIED
        upsert = db_session.execute.await_args_list[-1].args[0]
        sql = str(upsert.compile(dialect=postgresql.dialect()))
        assert "user_subscriptions.last_event_at <= excluded.last_event_at" in sql

    async def test_stale_when_stored_time_newer(self, db_session):
        stored = create_mock_subscription_row(
            status="expired", tier="free", last_event_at=EVENT_TIME + timedelta(days=1)
        )
        db_session.execute.side_effect = [make_result(scalar=None), make_result(scalar=stored)]

        result = await ReconciliationStore(db_session).apply_event(
            USER_ID,
            make_event(event_time=EVENT_TIME, is_renewal=True, source_event_type="RENEWAL"),
        )

        assert result.outcome == ApplyOutcome.STALE
        assert result.record is not None
        assert result.record.status == SubscriptionStatus.EXPIRED

    async def test_unkeyed_event_skips_ledger(self, db_session):
        db_session.execute.return_value = make_result(scalar=create_mock_subscription_row())

        await ReconciliationStore(db_session).apply_event(USER_ID, make_event())

        db_session.execute.assert_awaited_once()

    async def test_write_failure_raises_and_rolls_back(self, db_session):
        db_session.execute.side_effect = SQLAlchemyError("connection reset")

        with pytest.raises(UpstreamFailureError) as exc_info:
            await ReconciliationStore(db_session).apply_event(
                USER_ID, make_event(event_key="revenuecat:evt-1")
            )

        assert exc_info.value.operation == "subscription write"
        db_session.rollback.assert_awaited_once()
        db_session.commit.assert_not_awaited()

    async def test_statement_is_guarded_upsert(self, db_session):
        db_session.execute.return_value = make_result(scalar=create_mock_subscription_row())

        await ReconciliationStore(db_session).apply_event(USER_ID, make_event())

        stmt = db_session.execute.call_args.args[0]
        sql = str(stmt.compile(dialect=postgresql.dialect()))
        assert "INSERT INTO user_subscriptions" in sql
        assert "ON CONFLICT (user_id) DO UPDATE" in sql
        assert "user_subscriptions.last_event_at IS NULL" in sql
        assert "user_subscriptions.last_event_at <= excluded.last_event_at" in sql
        assert "RETURNING" in sql

    async def test_full_tuple_replaced(self, db_session):
        """Expired events write a null period end rather than keeping the old one."""
        db_session.execute.return_value = make_result(scalar=create_mock_subscription_row())

        await ReconciliationStore(db_session).apply_event(
            USER_ID,
            make_event(status=SubscriptionStatus.EXPIRED, tier=SubscriptionTier.FREE),
        )

        stmt = db_session.execute.call_args.args[0]
        params = stmt.compile(dialect=postgresql.dialect()).params
        assert params["status"] == "expired"
        assert params["tier"] == "free"
        assert params["current_period_end"] is None


class TestGet:
    async def test_returns_snapshot(self, db_session):
        db_session.execute.return_value = make_result(
            scalar=create_mock_subscription_row(provider="google", status="billing_issue")
        )

        record = await ReconciliationStore(db_session).get(USER_ID)

        assert record is not None
        assert record.provider == "google"
        assert record.status == SubscriptionStatus.BILLING_ISSUE

    async def test_missing(self, db_session):
        assert await ReconciliationStore(db_session).get(USER_ID) is None

    async def test_read_failure(self, db_session):
        db_session.execute.side_effect = SQLAlchemyError("timeout")
        with pytest.raises(UpstreamFailureError):
            await ReconciliationStore(db_session).get(USER_ID)


class TestToSubscriptionData:
    def test_passes_unknown_provider_through(self):
        record = to_subscription_data(create_mock_subscription_row(provider="AMAZON"))
        assert record.provider == "AMAZON"
