"""
Webhook verification, routing and ledger.

Signatures are produced with the same scheme Stripe uses, and verified by
the real stripe SDK.
"""
import logging

import pytest
from sqlalchemy import select

from billing_engine.core.config import settings
from billing_engine.core.database import billing_events, get_db_session
from billing_engine.core.errors import StoreUnavailableError
from billing_engine.features.billing.provider import BillingWebhookError
from billing_engine.features.billing.reconciler import Reconciler
from billing_engine.features.billing.service import process_webhook_event
from billing_engine.features.billing.stripe_provider import StripeProvider
from billing_engine.models.entitlement import Plan, SubscriptionStatus
from billing_engine.tests.stripe_payloads import (
    make_checkout_session,
    make_event,
    make_invoice,
    make_subscription,
    sign_payload,
    signed_headers,
)


def _ledger(event_id=None):
    with get_db_session() as session:
        query = select(billing_events)
        if event_id:
            query = query.where(billing_events.c.stripe_event_id == event_id)
        return session.execute(query).fetchall()


@pytest.fixture
def subscriber(store, now):
    """user_alice on enthusiast, linked to cus_123 / sub_123."""
    return store.upsert(
        "user_alice",
        {
            "plan": Plan.ENTHUSIAST,
            "status": SubscriptionStatus.ACTIVE,
            "billing_customer_id": "cus_123",
            "billing_subscription_id": "sub_123",
        },
        now=now,
    )


@pytest.fixture
def retrieved_subscription(monkeypatch):
    """Stub the provider's subscription lookup (no network)."""
    holder = {"subscription": make_subscription()}

    def fake_retrieve(self, subscription_id):
        return holder["subscription"]

    monkeypatch.setattr(StripeProvider, "retrieve_subscription", fake_retrieve)
    return holder


def test_tampered_signature_is_rejected_without_state_change(subscriber, store, now):
    body = make_event("customer.subscription.deleted", make_subscription())
    headers = signed_headers(body)
    tampered = body.replace(b"sub_123", b"sub_999")

    with pytest.raises(BillingWebhookError) as exc_info:
        process_webhook_event(headers, tampered)

    assert exc_info.value.status_code == 400
    record = store.get("user_alice", now=now)
    assert record.plan == Plan.ENTHUSIAST
    assert record.status == SubscriptionStatus.ACTIVE
    assert _ledger() == []


def test_wrong_secret_and_missing_header_are_rejected():
    body = make_event("customer.subscription.deleted", make_subscription())

    with pytest.raises(BillingWebhookError):
        process_webhook_event(signed_headers(body, secret="whsec_other"), body)
    with pytest.raises(BillingWebhookError):
        process_webhook_event({}, body)


def test_stale_signature_timestamp_is_rejected():
    body = make_event("customer.subscription.deleted", make_subscription())
    old = sign_payload(body, timestamp=1_000_000_000)
    with pytest.raises(BillingWebhookError):
        process_webhook_event({"stripe-signature": old}, body)


def test_subscription_deleted_downgrades_subscriber(subscriber, store, now):
    body = make_event("customer.subscription.deleted", make_subscription(), event_id="evt_del")
    result = process_webhook_event(signed_headers(body), body, now=now)

    assert result.outcome == "processed"
    assert result.user_id == "user_alice"
    record = store.get("user_alice", now=now)
    assert record.plan == Plan.COLLECTOR
    assert record.status == SubscriptionStatus.CANCELED
    assert record.billing_subscription_id is None
    assert _ledger("evt_del")[0].outcome == "processed"


def test_checkout_with_unmapped_price_falls_back_and_acks(seed_users, retrieved_subscription, store, now, caplog):
    retrieved_subscription["subscription"] = make_subscription(price_id="price_mystery")
    body = make_event(
        "checkout.session.completed",
        make_checkout_session(user_id="user_alice"),
        event_id="evt_checkout",
    )

    with caplog.at_level(logging.WARNING):
        result = process_webhook_event(signed_headers(body), body, now=now)

    assert result.outcome == "processed"
    record = store.get("user_alice", now=now)
    assert record.plan == Plan.COLLECTOR
    assert record.status == SubscriptionStatus.ACTIVE
    assert record.billing_customer_id == "cus_123"
    assert record.billing_subscription_id == "sub_123"
    assert any("unknown price" in r.getMessage() for r in caplog.records)


def test_checkout_links_customer_so_later_events_resolve(seed_users, retrieved_subscription, store, now, caplog):
    checkout = make_event("checkout.session.completed", make_checkout_session(user_id="user_alice"), event_id="evt_1")
    process_webhook_event(signed_headers(checkout), checkout, now=now)

    # No user metadata on the invoice: resolved through the stored customer id
    invoice = make_event("invoice.payment_failed", make_invoice(), event_id="evt_2")
    with caplog.at_level(logging.INFO):
        result = process_webhook_event(signed_headers(invoice), invoice, now=now)

    assert result.user_id == "user_alice"
    record = store.get("user_alice", now=now)
    assert record.status == SubscriptionStatus.PAST_DUE
    assert record.plan == Plan.CURATOR
    applied = [r for r in caplog.records if "event applied" in r.getMessage()]
    assert applied[-1].getMessage().endswith("(user resolved by customer)")


def test_strict_price_mapping_records_failure_without_writing(seed_users, retrieved_subscription, store, now, monkeypatch):
    monkeypatch.setattr(settings, "STRICT_PRICE_MAPPING", True)
    retrieved_subscription["subscription"] = make_subscription(price_id="price_mystery")
    body = make_event("checkout.session.completed", make_checkout_session(user_id="user_alice"), event_id="evt_strict")

    result = process_webhook_event(signed_headers(body), body, now=now)

    assert result.outcome == "failed"
    assert store.get("user_alice", now=now).persisted is False
    row = _ledger("evt_strict")[0]
    assert row.outcome == "failed"
    assert "UnknownPriceError" in row.error


def test_unresolvable_event_is_acknowledged_and_recorded(store, now, caplog):
    body = make_event(
        "customer.subscription.updated",
        make_subscription(sub_id="sub_orphan", customer="cus_orphan"),
        event_id="evt_orphan",
    )
    with caplog.at_level(logging.WARNING):
        result = process_webhook_event(signed_headers(body), body, now=now)

    assert result.outcome == "unresolved"
    assert store.find_by_customer("cus_orphan") is None
    assert _ledger("evt_orphan")[0].outcome == "unresolved"
    assert any("no local user" in r.getMessage() for r in caplog.records)


def test_unhandled_event_type_is_ignored(now):
    body = make_event("customer.created", {"id": "cus_new"}, event_id="evt_ignored")
    result = process_webhook_event(signed_headers(body), body, now=now)

    assert result.outcome == "ignored"
    assert _ledger("evt_ignored")[0].outcome == "ignored"


def test_processed_event_is_not_applied_twice(subscriber, store, now, monkeypatch):
    body = make_event("customer.subscription.deleted", make_subscription(), event_id="evt_dup")
    process_webhook_event(signed_headers(body), body, now=now)

    calls = []
    original = Reconciler.apply_subscription_deleted

    def counting(self, *args, **kwargs):
        calls.append(args)
        return original(self, *args, **kwargs)

    monkeypatch.setattr(Reconciler, "apply_subscription_deleted", counting)
    result = process_webhook_event(signed_headers(body), body, now=now)

    assert result.outcome == "duplicate"
    assert calls == []
    assert len(_ledger("evt_dup")) == 1


def test_processing_failure_is_logged_recorded_and_acknowledged(subscriber, store, now, monkeypatch, caplog):
    def unavailable(self, *args, **kwargs):
        raise StoreUnavailableError("Entitlement store unavailable during upsert")

    monkeypatch.setattr(Reconciler, "apply_subscription_deleted", unavailable)
    body = make_event("customer.subscription.deleted", make_subscription(), event_id="evt_fail")

    with caplog.at_level(logging.ERROR):
        result = process_webhook_event(signed_headers(body), body, now=now)

    assert result.outcome == "failed"
    assert store.get("user_alice", now=now).plan == Plan.ENTHUSIAST
    row = _ledger("evt_fail")[0]
    assert row.outcome == "failed"
    assert "StoreUnavailableError" in row.error
    failures = [r for r in caplog.records if "processing failed" in r.getMessage()]
    assert failures and failures[0].exc_info is not None


def test_failed_event_is_reprocessed_on_redelivery(subscriber, store, now, monkeypatch):
    body = make_event("customer.subscription.deleted", make_subscription(), event_id="evt_retry")

    def unavailable(self, *args, **kwargs):
        raise StoreUnavailableError("down")

    with monkeypatch.context() as patched:
        patched.setattr(Reconciler, "apply_subscription_deleted", unavailable)
        assert process_webhook_event(signed_headers(body), body, now=now).outcome == "failed"

    result = process_webhook_event(signed_headers(body), body, now=now)
    assert result.outcome == "processed"
    assert store.get("user_alice", now=now).status == SubscriptionStatus.CANCELED


def test_subscription_created_is_applied_like_updated(seed_users, store, now):
    subscription = make_subscription(sub_id="sub_new", customer="cus_new", price_id="price_enthusiast_monthly")
    subscription["metadata"] = {"user_id": "user_bob"}
    body = make_event("customer.subscription.created", subscription, event_id="evt_created")

    result = process_webhook_event(signed_headers(body), body, now=now)

    assert result.outcome == "processed"
    record = store.get("user_bob", now=now)
    assert record.plan == Plan.ENTHUSIAST
    assert record.billing_customer_id == "cus_new"
    assert record.billing_subscription_id == "sub_new"
