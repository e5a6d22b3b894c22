"""Stripe-shaped payload builders and a compatible webhook signer for tests."""
import hashlib
import hmac
import json
import time
from typing import Optional

WEBHOOK_SECRET = "whsec_test_secret"

# 2026-03-15T12:00:00Z and 2026-04-15T12:00:00Z
PERIOD_START = 1773576000
PERIOD_END = 1776254400


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a `stripe-signature` header: t=<ts>,v1=HMAC-SHA256(secret, "<ts>.<body>")."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def signed_headers(payload: bytes, secret: str = WEBHOOK_SECRET) -> dict:
    return {"stripe-signature": sign_payload(payload, secret)}


def make_event(event_type: str, obj: dict, event_id: str = "evt_test_1") -> bytes:
    return json.dumps({
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": int(time.time()),
        "data": {"object": obj},
    }).encode("utf-8")


def make_subscription(
    sub_id: str = "sub_123",
    customer: str = "cus_123",
    price_id: str = "price_curator_monthly",
    status: str = "active",
    period_start: Optional[int] = PERIOD_START,
    period_end: Optional[int] = PERIOD_END,
    **extra,
) -> dict:
    subscription = {
        "id": sub_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "current_period_start": period_start,
        "current_period_end": period_end,
        "items": {"data": [{"price": {"id": price_id, "metadata": {}}}]},
        "metadata": {},
    }
    subscription.update(extra)
    return subscription


def make_checkout_session(
    session_id: str = "cs_123",
    customer: str = "cus_123",
    subscription="sub_123",
    user_id: Optional[str] = None,
) -> dict:
    session = {
        "id": session_id,
        "object": "checkout.session",
        "mode": "subscription",
        "customer": customer,
        "subscription": subscription,
        "metadata": {},
    }
    if user_id:
        session["metadata"]["user_id"] = user_id
        session["client_reference_id"] = user_id
    return session


def make_invoice(customer: str = "cus_123", subscription: str = "sub_123") -> dict:
    return {
        "id": "in_123",
        "object": "invoice",
        "customer": customer,
        "subscription": subscription,
        "status": "open",
    }
