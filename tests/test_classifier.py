"""
Tests for the event classifier.

Mapping table, store mapping, time conversion, native sync and Stripe
subscription classification, plus Hypothesis properties over arbitrary
aggregator payloads.
"""

from datetime import UTC, datetime, timedelta

import pytest
from hypothesis import given
from hypothesis import strategies as st

from entitlements.exceptions import InvalidInputError
from entitlements.models.api import RevenueCatEvent, SubscriptionStatus, SubscriptionTier
from entitlements.services.classifier import (
    REVENUECAT_EVENT_MAP,
    classify_native_sync,
    classify_revenuecat_event,
    classify_stripe_subscription,
    from_epoch_millis,
    resolve_stripe_tier,
    revenuecat_event_key,
    store_to_provider,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
EXPIRES_MS = 1_775_000_000_000
EVENT_MS = 1_772_000_000_000

# ============================================================================
# Hypothesis Strategies
# ============================================================================

known_event_types = st.sampled_from(sorted(REVENUECAT_EVENT_MAP))
unknown_event_types = st.text(min_size=0, max_size=30).filter(
    lambda t: t not in REVENUECAT_EVENT_MAP
)
stores = st.one_of(
    st.none(), st.sampled_from(["APP_STORE", "PLAY_STORE", "STRIPE", "AMAZON", "PROMOTIONAL"])
)
epoch_ms = st.integers(min_value=0, max_value=4_102_444_800_000)  # through 2100
user_ids = st.text(min_size=1, max_size=40)


def rc_event(**overrides) -> RevenueCatEvent:
    fields = {
        "id": "evt-1",
        "type": "INITIAL_PURCHASE",
        "app_user_id": "user-123",
        "product_id": "premium_monthly",
        "expiration_at_ms": EXPIRES_MS,
        "event_timestamp_ms": EVENT_MS,
        "store": "APP_STORE",
    }
    fields.update(overrides)
    return RevenueCatEvent(**fields)


# ============================================================================
# RevenueCat mapping table
# ============================================================================


class TestRevenueCatMapping:
    @pytest.mark.parametrize(
        ("event_type", "status", "tier", "is_renewal"),
        [
            ("INITIAL_PURCHASE", SubscriptionStatus.ACTIVE, SubscriptionTier.PREMIUM, False),
            ("UNCANCELLATION", SubscriptionStatus.ACTIVE, SubscriptionTier.PREMIUM, False),
            ("RENEWAL", SubscriptionStatus.ACTIVE, SubscriptionTier.PREMIUM, True),
            ("CANCELLATION", SubscriptionStatus.CANCELLED, SubscriptionTier.PREMIUM, False),
            ("EXPIRATION", SubscriptionStatus.EXPIRED, SubscriptionTier.FREE, False),
            ("BILLING_ISSUE", SubscriptionStatus.BILLING_ISSUE, SubscriptionTier.PREMIUM, False),
            ("PRODUCT_CHANGE", SubscriptionStatus.ACTIVE, SubscriptionTier.PREMIUM, False),
        ],
    )
    def test_event_type_mapping(self, event_type, status, tier, is_renewal):
        event = classify_revenuecat_event(rc_event(type=event_type))

        assert event is not None
        assert event.status == status
        assert event.tier == tier
        assert event.is_renewal is is_renewal
        assert event.source_event_type == event_type

    def test_unknown_type_is_noop(self):
        assert classify_revenuecat_event(rc_event(type="TRANSFER")) is None

    def test_missing_type_is_noop(self):
        assert classify_revenuecat_event(rc_event(type=None)) is None

    def test_missing_user_is_noop(self):
        assert classify_revenuecat_event(rc_event(app_user_id=None)) is None

    def test_empty_user_is_noop(self):
        assert classify_revenuecat_event(rc_event(app_user_id="")) is None

    def test_expiration_clears_period_end(self):
        event = classify_revenuecat_event(rc_event(type="EXPIRATION"))
        assert event is not None
        assert event.current_period_end is None

    def test_cancellation_stamps_cancelled_at(self):
        event = classify_revenuecat_event(rc_event(type="CANCELLATION"))
        assert event is not None
        assert event.cancelled_at == event.event_time
        assert event.current_period_end == from_epoch_millis(EXPIRES_MS)

    def test_period_end_from_epoch_millis(self):
        event = classify_revenuecat_event(rc_event())
        assert event is not None
        assert event.current_period_end == datetime.fromtimestamp(EXPIRES_MS / 1000, tz=UTC)

    def test_event_time_from_event_timestamp(self):
        event = classify_revenuecat_event(rc_event(), received_at=NOW)
        assert event is not None
        assert event.event_time == from_epoch_millis(EVENT_MS)

    def test_event_time_falls_back_to_receipt(self):
        event = classify_revenuecat_event(rc_event(event_timestamp_ms=None), received_at=NOW)
        assert event is not None
        assert event.event_time == NOW


class TestRevenueCatEventKey:
    def test_event_id_is_key(self):
        event = classify_revenuecat_event(rc_event(id="evt-42"))
        assert event is not None
        assert event.event_key == "revenuecat:evt-42"

    def test_key_ignores_receipt_time(self):
        delivery = rc_event(id=None, type="RENEWAL", event_timestamp_ms=None)
        first = classify_revenuecat_event(delivery, received_at=NOW)
        again = classify_revenuecat_event(delivery, received_at=NOW + timedelta(minutes=1))
        assert first is not None and again is not None
        assert first.event_key == again.event_key

    def test_next_period_gets_new_key(self):
        this_period = rc_event(id=None, type="RENEWAL")
        next_period = rc_event(
            id=None, type="RENEWAL", expiration_at_ms=EXPIRES_MS + 30 * 86_400_000
        )
        assert revenuecat_event_key(this_period) != revenuecat_event_key(next_period)


class TestStoreMapping:
    @pytest.mark.parametrize(
        ("store", "provider"),
        [
            ("APP_STORE", "apple"),
            ("PLAY_STORE", "google"),
            ("AMAZON", "AMAZON"),
            (None, "unknown"),
            ("", "unknown"),
        ],
    )
    def test_store_to_provider(self, store, provider):
        assert store_to_provider(store) == provider


class TestEpochMillis:
    def test_none(self):
        assert from_epoch_millis(None) is None

    def test_zero_is_epoch(self):
        assert from_epoch_millis(0) == datetime(1970, 1, 1, tzinfo=UTC)


# ============================================================================
# Properties
# ============================================================================


class TestClassifierProperties:
    @given(event_type=known_event_types, store=stores, user_id=user_ids, expires=epoch_ms)
    def test_known_types_always_classify(self, event_type, store, user_id, expires):
        """Every mapped type with a user id yields an event that matches the table."""
        event = classify_revenuecat_event(
            rc_event(type=event_type, store=store, app_user_id=user_id, expiration_at_ms=expires),
            received_at=NOW,
        )

        assert event is not None
        mapping = REVENUECAT_EVENT_MAP[event_type]
        assert event.status == mapping.status
        assert event.tier == mapping.tier
        assert event.is_renewal == mapping.is_renewal
        assert event.provider == store_to_provider(store)
        assert event.event_time.tzinfo is not None

    @given(event_type=unknown_event_types, user_id=user_ids)
    def test_unknown_types_never_classify(self, event_type, user_id):
        assert classify_revenuecat_event(rc_event(type=event_type, app_user_id=user_id)) is None

    @given(event_type=known_event_types, expires=st.one_of(st.none(), epoch_ms))
    def test_only_expiration_is_unentitled(self, event_type, expires):
        event = classify_revenuecat_event(
            rc_event(type=event_type, expiration_at_ms=expires), received_at=NOW
        )
        assert event is not None
        if event_type == "EXPIRATION":
            assert event.tier == SubscriptionTier.FREE
            assert event.current_period_end is None
        else:
            assert event.tier == SubscriptionTier.PREMIUM

    @given(event_type=known_event_types)
    def test_classification_is_deterministic(self, event_type):
        payload = rc_event(type=event_type)
        assert classify_revenuecat_event(payload, NOW) == classify_revenuecat_event(payload, NOW)

    @given(ms=epoch_ms)
    def test_epoch_millis_round_trip(self, ms):
        converted = from_epoch_millis(ms)
        assert converted is not None
        assert abs(converted.timestamp() * 1000 - ms) < 1


# ============================================================================
# Native sync
# ============================================================================


class TestNativeSync:
    @pytest.mark.parametrize("provider", ["apple", "google"])
    def test_active_premium(self, provider):
        event = classify_native_sync(provider, None, NOW)

        assert event.status == SubscriptionStatus.ACTIVE
        assert event.tier == SubscriptionTier.PREMIUM
        assert event.provider == provider
        assert event.is_renewal is False
        assert event.event_time == NOW
        assert event.event_key is None

    def test_default_period_is_thirty_days(self):
        event = classify_native_sync("apple", None, NOW)
        assert event.current_period_end == NOW + timedelta(days=30)

    def test_custom_default_period(self):
        event = classify_native_sync("google", None, NOW, default_period_days=7)
        assert event.current_period_end == NOW + timedelta(days=7)

    def test_explicit_expiration_kept(self):
        expires = datetime(2026, 4, 15, tzinfo=UTC)
        assert classify_native_sync("apple", expires, NOW).current_period_end == expires

    def test_naive_expiration_treated_as_utc(self):
        event = classify_native_sync("apple", datetime(2026, 4, 15), NOW)
        assert event.current_period_end == datetime(2026, 4, 15, tzinfo=UTC)

    @pytest.mark.parametrize("provider", ["stripe", "", None, "APPLE", "amazon"])
    def test_invalid_provider(self, provider):
        with pytest.raises(InvalidInputError) as exc_info:
            classify_native_sync(provider, None, NOW)
        assert exc_info.value.field == "provider"


# ============================================================================
# Stripe
# ============================================================================


class TestResolveStripeTier:
    PRICES = {"price_pro": "pro", "price_premium": "premium", "price_adfree": "adfree"}

    def test_known_price(self):
        assert resolve_stripe_tier("price_premium", self.PRICES, "pro") == SubscriptionTier.PREMIUM

    def test_unknown_price_uses_default(self):
        assert resolve_stripe_tier("price_new", self.PRICES, "pro") == SubscriptionTier.PRO

    def test_missing_price_uses_default(self):
        assert resolve_stripe_tier(None, self.PRICES, "pro") == SubscriptionTier.PRO

    def test_unsupported_tier_is_free(self):
        assert resolve_stripe_tier("price_adfree", self.PRICES, "pro") == SubscriptionTier.FREE


class TestClassifyStripeSubscription:
    def classify(self, **overrides):
        fields = {
            "stripe_status": "active",
            "cancel_at_period_end": False,
            "tier": SubscriptionTier.PRO,
            "price_id": "price_pro",
            "current_period_end": NOW + timedelta(days=30),
            "canceled_at": None,
            "event_time": NOW,
            "event_type": "customer.subscription.updated",
        }
        fields.update(overrides)
        return classify_stripe_subscription(**fields)

    def test_active(self):
        event = self.classify()
        assert event.status == SubscriptionStatus.ACTIVE
        assert event.tier == SubscriptionTier.PRO
        assert event.provider == "stripe"
        assert event.product_id == "price_pro"

    @pytest.mark.parametrize("status", ["canceled", "incomplete_expired"])
    def test_canceled_is_expired_free(self, status):
        event = self.classify(stripe_status=status, canceled_at=NOW)
        assert event.status == SubscriptionStatus.EXPIRED
        assert event.tier == SubscriptionTier.FREE
        assert event.current_period_end is None

    def test_cancel_at_period_end_keeps_tier(self):
        event = self.classify(cancel_at_period_end=True, canceled_at=NOW)
        assert event.status == SubscriptionStatus.CANCELLED
        assert event.tier == SubscriptionTier.PRO
        assert event.cancelled_at == NOW

    @pytest.mark.parametrize("status", ["past_due", "unpaid", "incomplete"])
    def test_payment_problems_are_billing_issue(self, status):
        assert self.classify(stripe_status=status).status == SubscriptionStatus.BILLING_ISSUE

    def test_trialing(self):
        assert self.classify(stripe_status="trialing").status == SubscriptionStatus.TRIALING

    def test_renewal_flag_passed_through(self):
        event = self.classify(is_renewal=True, event_type="invoice.payment_succeeded")
        assert event.is_renewal is True
