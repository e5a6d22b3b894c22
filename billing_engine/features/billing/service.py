"""
Billing webhook orchestrator.

Coordinates:
- Signature verification (before any payload parsing)
- Event ledger (idempotency bookkeeping in billing_events)
- User resolution from billing references
- Dispatch to Reconciler transitions by event type

Once an event is verified it is always acknowledged: processing failures are
logged and recorded in the ledger, never turned into a non-2xx response.
All Stripe-specific code is in stripe_provider.py.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional
import logging

from sqlalchemy import select

from billing_engine.core.database import billing_events, get_db_session
from billing_engine.core.logging import log_event
from billing_engine.features.billing.provider import (
    BillingEvent,
    BillingProvider,
    BillingWebhookError,
)
from billing_engine.features.billing.reconciler import Reconciler
from billing_engine.features.billing.stripe_provider import StripeProvider
from billing_engine.features.entitlements.clock import normalize_now
from billing_engine.features.entitlements.store import (
    EntitlementStore,
    dialect_insert,
    get_store,
)


logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_CREATED = "customer.subscription.created"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
PAYMENT_FAILED = "invoice.payment_failed"

HANDLED_EVENT_TYPES = frozenset({
    CHECKOUT_COMPLETED,
    SUBSCRIPTION_CREATED,
    SUBSCRIPTION_UPDATED,
    SUBSCRIPTION_DELETED,
    PAYMENT_FAILED,
})

# Ledger outcomes
OUTCOME_RECEIVED = "received"
OUTCOME_PROCESSED = "processed"
OUTCOME_IGNORED = "ignored"
OUTCOME_UNRESOLVED = "unresolved"
OUTCOME_FAILED = "failed"
OUTCOME_DUPLICATE = "duplicate"  # reported only, never stored


def get_provider() -> BillingProvider:
    return StripeProvider()


@dataclass(frozen=True)
class WebhookResult:
    event_id: str
    event_type: str
    outcome: str
    user_id: Optional[str] = None


@dataclass(frozen=True)
class UserResolution:
    user_id: str
    source: str  # customer | subscription | metadata
    customer_id: Optional[str] = None


def _ref_id(value: Any) -> Optional[str]:
    """Billing references arrive either as ids or as expanded objects."""
    if isinstance(value, str):
        return value or None
    if isinstance(value, dict):
        return value.get("id")
    return None


def _subscription_ref(event: BillingEvent) -> Optional[str]:
    data = event.data
    if event.event_type.startswith("customer.subscription."):
        return data.get("id")
    ref = _ref_id(data.get("subscription"))
    if ref:
        return ref
    # Newer invoice payloads nest the subscription under parent
    details = ((data.get("parent") or {}).get("subscription_details") or {})
    return _ref_id(details.get("subscription"))


def _metadata_user_id(event: BillingEvent) -> Optional[str]:
    data = event.data
    metadata = data.get("metadata") or {}
    user_id = metadata.get("user_id") or data.get("client_reference_id")
    if not user_id and isinstance(data.get("subscription"), dict):
        user_id = (data["subscription"].get("metadata") or {}).get("user_id")
    if not user_id:
        details = ((data.get("parent") or {}).get("subscription_details") or {})
        user_id = (details.get("metadata") or {}).get("user_id")
    return user_id or None


def resolve_user(event: BillingEvent, store: EntitlementStore) -> Optional[UserResolution]:
    """
    Map an event to a local user.

    Order: local record by customer id, local record by subscription id,
    then the user id stamped on the billing object at checkout.
    """
    customer_id = _ref_id(event.data.get("customer"))
    if customer_id:
        record = store.find_by_customer(customer_id)
        if record:
            return UserResolution(record.user_id, "customer")

    subscription_id = _subscription_ref(event)
    if subscription_id:
        record = store.find_by_subscription(subscription_id)
        if record:
            return UserResolution(record.user_id, "subscription")

    user_id = _metadata_user_id(event)
    if user_id:
        return UserResolution(user_id, "metadata", customer_id=customer_id)
    return None


def verify_webhook(
    headers: Dict[str, str],
    body: bytes,
    provider: Optional[BillingProvider] = None,
) -> BillingEvent:
    """
    Authenticate a webhook delivery.

    Raises:
        BillingWebhookError: signature missing or invalid; nothing was written
    """
    provider = provider or get_provider()
    try:
        return provider.verify_event(headers, body)
    except BillingWebhookError as e:
        logger.warning(
            "[billing_webhook] verification failed",
            extra={"error_code": e.code, "error_message": e.message},
        )
        raise


def get_event_outcome(event_id: str) -> Optional[str]:
    with get_db_session() as session:
        row = session.execute(
            select(billing_events.c.outcome).where(billing_events.c.stripe_event_id == event_id)
        ).fetchone()
    return row[0] if row else None


def record_event(
    event: BillingEvent,
    outcome: str,
    *,
    user_id: Optional[str] = None,
    error: Optional[str] = None,
    now: Optional[datetime] = None,
) -> None:
    """Insert or update the ledger row for an event."""
    now = normalize_now(now)
    finished = outcome != OUTCOME_RECEIVED
    values = {
        "event_type": event.event_type,
        "outcome": outcome,
        "user_id": user_id,
        "error": error[:2000] if error else None,
        "processed_at": now if finished else None,
    }
    with get_db_session() as session:
        insert = dialect_insert(session)
        stmt = insert(billing_events).values(stripe_event_id=event.event_id, **values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[billing_events.c.stripe_event_id],
            set_=values,
        )
        session.execute(stmt)


def _load_subscription(event: BillingEvent, provider: BillingProvider) -> Optional[Dict[str, Any]]:
    subscription = event.data.get("subscription")
    if isinstance(subscription, dict):
        return subscription
    if isinstance(subscription, str) and subscription:
        return provider.retrieve_subscription(subscription)
    return None


def dispatch_event(
    event: BillingEvent,
    *,
    store: Optional[EntitlementStore] = None,
    reconciler: Optional[Reconciler] = None,
    provider: Optional[BillingProvider] = None,
    now: Optional[datetime] = None,
) -> WebhookResult:
    """
    Route a verified event to its transition.

    Raises whatever the transition raises (store, provider, strict price
    mapping); the caller decides how to acknowledge.
    """
    now = normalize_now(now)
    store = store or get_store()
    reconciler = reconciler or Reconciler(store=store)
    log_extra = {"event_id": event.event_id, "event_type": event.event_type}

    if event.event_type not in HANDLED_EVENT_TYPES:
        logger.info("[billing_webhook] unhandled event type", extra=log_extra)
        return WebhookResult(event.event_id, event.event_type, OUTCOME_IGNORED)

    resolution = resolve_user(event, store)
    if resolution is None:
        logger.warning(
            "[billing_webhook] no local user for event",
            extra={**log_extra, "customer_id": _ref_id(event.data.get("customer"))},
        )
        return WebhookResult(event.event_id, event.event_type, OUTCOME_UNRESOLVED)

    user_id = resolution.user_id
    customer_id = resolution.customer_id

    if event.event_type == CHECKOUT_COMPLETED:
        subscription = _load_subscription(event, provider or get_provider())
        if subscription is None:
            logger.warning("[billing_webhook] checkout session has no subscription", extra=log_extra)
            return WebhookResult(event.event_id, event.event_type, OUTCOME_IGNORED, user_id)
        reconciler.apply_checkout_completed(
            user_id, subscription, customer_id=customer_id, event_id=event.event_id, now=now
        )
    elif event.event_type in (SUBSCRIPTION_CREATED, SUBSCRIPTION_UPDATED):
        reconciler.apply_subscription_updated(
            user_id, event.data, customer_id=customer_id, event_id=event.event_id, now=now
        )
    elif event.event_type == SUBSCRIPTION_DELETED:
        reconciler.apply_subscription_deleted(user_id, now=now)
    elif event.event_type == PAYMENT_FAILED:
        reconciler.apply_payment_failed(user_id, now=now)

    logger.info(
        "[billing_webhook] event applied (user resolved by %s)",
        resolution.source,
        extra={**log_extra, "user_id": user_id},
    )
    return WebhookResult(event.event_id, event.event_type, OUTCOME_PROCESSED, user_id)


def handle_verified_event(
    event: BillingEvent,
    *,
    store: Optional[EntitlementStore] = None,
    provider: Optional[BillingProvider] = None,
    dispatcher: Callable[..., WebhookResult] = dispatch_event,
    now: Optional[datetime] = None,
) -> WebhookResult:
    """
    Process a verified event and record the outcome. Never raises.

    An event already recorded as processed is skipped. Failed or unresolved
    events are processed again when redelivered.
    """
    log_extra = {"event_id": event.event_id, "event_type": event.event_type}
    try:
        if get_event_outcome(event.event_id) == OUTCOME_PROCESSED:
            logger.info("[billing_webhook] duplicate event skipped", extra=log_extra)
            return WebhookResult(event.event_id, event.event_type, OUTCOME_DUPLICATE)
        record_event(event, OUTCOME_RECEIVED, now=now)
        result = dispatcher(event, store=store, provider=provider, now=now)
        record_event(event, result.outcome, user_id=result.user_id, now=now)
        return result
    except Exception as e:
        log_event(
            "error",
            "[billing_webhook] processing failed",
            event_id=event.event_id,
            event_type=event.event_type,
            error_code=getattr(e, "code", "webhook_processing_failed"),
            extra={"error_message": e},
            exc_info=True,
        )
        try:
            record_event(event, OUTCOME_FAILED, error=f"{type(e).__name__}: {e}", now=now)
        except Exception:
            logger.error("[billing_webhook] could not record failure", extra=log_extra, exc_info=True)
        return WebhookResult(event.event_id, event.event_type, OUTCOME_FAILED)


def process_webhook_event(
    headers: Dict[str, str],
    body: bytes,
    *,
    provider: Optional[BillingProvider] = None,
    store: Optional[EntitlementStore] = None,
    now: Optional[datetime] = None,
) -> WebhookResult:
    """
    Verify and process one webhook delivery.

    Raises:
        BillingWebhookError: only on verification failure
    """
    provider = provider or get_provider()
    event = verify_webhook(headers, body, provider)
    logger.info(
        "[billing_webhook] received",
        extra={"event_id": event.event_id, "event_type": event.event_type},
    )
    return handle_verified_event(event, store=store, provider=provider, now=now)
