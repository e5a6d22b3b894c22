"""
Reconciler transitions: complete-state writes, idempotency, price resolution.
"""
from datetime import datetime, timedelta, timezone
import logging

import pytest

from billing_engine.core.errors import NotFoundError, UnknownPriceError, ValidationError
from billing_engine.features.billing.reconciler import (
    Reconciler,
    admin_override_state,
    lazy_corrections,
    map_billing_status,
    resolve_plan,
    subscription_period,
)
from billing_engine.features.entitlements.clock import next_reset_boundary
from billing_engine.models.entitlement import EntitlementRecord, Plan, SubscriptionStatus
from billing_engine.tests.stripe_payloads import PERIOD_END, make_subscription


PERIOD_END_DT = datetime.fromtimestamp(PERIOD_END, tz=timezone.utc)


@pytest.fixture
def reconciler(store):
    return Reconciler(store=store)


def _snapshot(store, user_id, now):
    return store.get(user_id, now=now).model_dump()


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("trialing", SubscriptionStatus.TRIALING),
        ("active", SubscriptionStatus.ACTIVE),
        ("past_due", SubscriptionStatus.PAST_DUE),
        ("canceled", SubscriptionStatus.CANCELED),
        ("incomplete", SubscriptionStatus.INCOMPLETE),
        ("incomplete_expired", SubscriptionStatus.EXPIRED),
        ("unpaid", SubscriptionStatus.PAST_DUE),
        ("paused", SubscriptionStatus.INCOMPLETE),
        (None, SubscriptionStatus.INCOMPLETE),
    ],
)
def test_map_billing_status(raw, expected):
    assert map_billing_status(raw) == expected


def test_resolve_plan_from_price_map():
    price_map = {"price_a": Plan.ENTHUSIAST}
    assert resolve_plan({"id": "price_a"}, price_map) == Plan.ENTHUSIAST


def test_resolve_plan_from_tier_metadata():
    assert resolve_plan({"id": "price_x", "metadata": {"tier": "curator"}}, {}) == Plan.CURATOR
    product_tier = {"id": "price_y", "metadata": {}, "product": {"id": "prod_1", "metadata": {"tier": "enthusiast"}}}
    assert resolve_plan(product_tier, {}) == Plan.ENTHUSIAST


def test_resolve_plan_unknown_price_falls_back_with_warning(caplog):
    with caplog.at_level(logging.WARNING):
        plan = resolve_plan({"id": "price_unknown"}, {}, event_id="evt_1")
    assert plan == Plan.COLLECTOR
    assert any("unknown price" in r.getMessage() for r in caplog.records)


def test_resolve_plan_unknown_price_strict_raises():
    with pytest.raises(UnknownPriceError) as exc_info:
        resolve_plan({"id": "price_unknown"}, {}, strict=True)
    assert exc_info.value.details["price_id"] == "price_unknown"


def test_subscription_period_falls_back_to_first_item():
    subscription = make_subscription(period_start=None, period_end=None)
    subscription["items"]["data"][0]["current_period_end"] = PERIOD_END
    _, end = subscription_period(subscription)
    assert end == PERIOD_END_DT


def test_checkout_completed_sets_plan_status_and_references(reconciler, store, now):
    record = reconciler.apply_checkout_completed(
        "user_alice", make_subscription(), customer_id="cus_123", now=now
    )
    assert record.plan == Plan.CURATOR
    assert record.status == SubscriptionStatus.ACTIVE
    assert record.billing_subscription_id == "sub_123"
    assert record.billing_customer_id == "cus_123"
    assert record.current_period_end == PERIOD_END_DT


def test_checkout_completed_trialing_without_trial_end_gets_one(reconciler, now):
    record = reconciler.apply_checkout_completed(
        "user_alice", make_subscription(status="trialing"), now=now
    )
    assert record.status == SubscriptionStatus.TRIALING
    assert record.trial_end == PERIOD_END_DT


def test_converted_trial_clears_trial_window(reconciler, now):
    trial_start = int((now - timedelta(days=7)).timestamp())
    trial_end = int(now.timestamp())
    reconciler.apply_checkout_completed(
        "user_alice",
        make_subscription(status="trialing", trial_start=trial_start, trial_end=trial_end),
        now=now,
    )

    # Stripe keeps reporting the historical trial bounds after conversion
    record = reconciler.apply_subscription_updated(
        "user_alice",
        make_subscription(status="active", trial_start=trial_start, trial_end=trial_end),
        now=now,
    )

    assert record.status == SubscriptionStatus.ACTIVE
    assert record.trial_start is None
    assert record.trial_end is None


def test_past_due_update_carries_no_trial_window(reconciler, now):
    record = reconciler.apply_subscription_updated(
        "user_alice",
        make_subscription(status="past_due", trial_end=int(now.timestamp())),
        now=now,
    )
    assert record.trial_end is None


def test_subscription_updated_mirrors_status_and_reresolves_plan(reconciler, now):
    reconciler.apply_checkout_completed("user_alice", make_subscription(), customer_id="cus_123", now=now)
    record = reconciler.apply_subscription_updated(
        "user_alice",
        make_subscription(price_id="price_enthusiast_monthly", status="past_due"),
        now=now,
    )
    assert record.plan == Plan.ENTHUSIAST
    assert record.status == SubscriptionStatus.PAST_DUE
    assert record.billing_customer_id == "cus_123"


def test_subscription_deleted_downgrades_and_clears_subscription(reconciler, now):
    reconciler.apply_checkout_completed(
        "user_alice", make_subscription(price_id="price_enthusiast_monthly"), customer_id="cus_123", now=now
    )
    record = reconciler.apply_subscription_deleted("user_alice", now=now)

    assert record.plan == Plan.COLLECTOR
    assert record.status == SubscriptionStatus.CANCELED
    assert record.billing_subscription_id is None
    assert record.current_period_end == now
    assert record.billing_customer_id == "cus_123"


def test_payment_failed_changes_status_only(reconciler, now):
    reconciler.apply_checkout_completed("user_alice", make_subscription(), now=now)
    record = reconciler.apply_payment_failed("user_alice", now=now)
    assert record.status == SubscriptionStatus.PAST_DUE
    assert record.plan == Plan.CURATOR


TRANSITIONS = {
    "checkout": lambda r, now: r.apply_checkout_completed("user_alice", make_subscription(), customer_id="cus_123", now=now),
    "updated": lambda r, now: r.apply_subscription_updated(
        "user_alice", make_subscription(price_id="price_enthusiast_monthly"), now=now
    ),
    "deleted": lambda r, now: r.apply_subscription_deleted("user_alice", now=now),
    "payment_failed": lambda r, now: r.apply_payment_failed("user_alice", now=now),
}


@pytest.mark.parametrize("name", sorted(TRANSITIONS))
def test_each_transition_applied_twice_equals_once(name, reconciler, store, now):
    TRANSITIONS[name](reconciler, now)
    once = _snapshot(store, "user_alice", now)
    TRANSITIONS[name](reconciler, now)
    assert _snapshot(store, "user_alice", now) == once


@pytest.mark.parametrize("first, second", [("updated", "deleted"), ("deleted", "updated"), ("checkout", "payment_failed")])
def test_duplicate_delivery_around_another_event(first, second, store, now):
    """A then B then A again ends where B then A ends."""
    replayed = Reconciler(store=store)
    TRANSITIONS[first](replayed, now)
    TRANSITIONS[second](replayed, now)
    TRANSITIONS[first](replayed, now)
    with_duplicate = _snapshot(store, "user_alice", now)

    store.upsert("user_alice", {
        "plan": Plan.COLLECTOR,
        "status": SubscriptionStatus.ACTIVE,
        "billing_customer_id": None,
        "billing_subscription_id": None,
        "current_period_start": None,
        "current_period_end": None,
        "trial_start": None,
        "trial_end": None,
    }, now=now)
    TRANSITIONS[second](replayed, now)
    TRANSITIONS[first](replayed, now)
    assert _snapshot(store, "user_alice", now) == with_duplicate


def test_admin_override_state_activating_extends_one_year(now):
    fields = admin_override_state(Plan.CURATOR, SubscriptionStatus.ACTIVE, now)
    assert fields["current_period_end"] == datetime(2027, 3, 15, 12, 0, tzinfo=timezone.utc)
    assert fields["scans_used"] == 0
    assert fields["scans_reset_at"] == next_reset_boundary(now)
    assert fields["trial_end"] is None


def test_admin_override_state_not_activating_ends_period_now(now):
    fields = admin_override_state(Plan.COLLECTOR, SubscriptionStatus.CANCELED, now)
    assert fields["current_period_end"] == now


def test_admin_override_trialing_sets_trial_window(now):
    fields = admin_override_state(Plan.CURATOR, SubscriptionStatus.TRIALING, now)
    assert fields["trial_start"] == now
    assert fields["trial_end"] == now + timedelta(days=7)


def test_apply_admin_override_validates_before_writing(reconciler, store, seed_users, now):
    with pytest.raises(ValidationError):
        reconciler.apply_admin_override("user_alice", "platinum", "active", now=now)
    with pytest.raises(ValidationError):
        reconciler.apply_admin_override("user_alice", "curator", "paused", now=now)
    with pytest.raises(NotFoundError):
        reconciler.apply_admin_override("user_ghost", "curator", "active", now=now)

    assert store.get("user_alice", now=now).persisted is False
    assert store.get("user_ghost", now=now).persisted is False


def test_lazy_corrections_expire_trial_and_roll_quota(now):
    record = EntitlementRecord(
        user_id="user_alice",
        plan=Plan.CURATOR,
        status=SubscriptionStatus.TRIALING,
        trial_end=now - timedelta(hours=1),
        scans_used=4,
        scans_reset_at=now - timedelta(days=2),
    )
    correction = lazy_corrections(record, now)

    assert correction.trial_expired and correction.quota_rolled_over
    assert correction.record.plan == Plan.COLLECTOR
    assert correction.record.status == SubscriptionStatus.EXPIRED
    assert correction.record.scans_used == 0
    assert correction.record.scans_reset_at == next_reset_boundary(now)
    assert correction.record.scans_reset_at > now


def test_lazy_corrections_leave_current_record_alone(now):
    record = EntitlementRecord(
        user_id="user_alice",
        plan=Plan.CURATOR,
        status=SubscriptionStatus.ACTIVE,
        scans_used=4,
        scans_reset_at=now + timedelta(days=2),
    )
    correction = lazy_corrections(record, now)
    assert not correction.changed
    assert correction.record is record
