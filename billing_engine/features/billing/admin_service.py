"""
Admin billing operations service.

Handles:
- Manual plan/status overrides (customer support)
- Webhook ledger listing
- Audit logging

An override and its audit row commit together: if the audit insert fails
the override is rolled back and AdminAuditWriteError (500) is raised.
"""
import json
from datetime import datetime
from typing import Optional
import logging

from sqlalchemy import select, insert

from billing_engine.core.admin_auth import AdminActor
from billing_engine.core.database import (
    get_db_session,
    billing_events,
    billing_admin_audit,
)
from billing_engine.core.errors import AdminAuditWriteError
from billing_engine.features.billing.reconciler import Reconciler
from billing_engine.models.entitlement import EntitlementRecord


logger = logging.getLogger(__name__)

LEDGER_OUTCOMES = ("received", "processed", "ignored", "unresolved", "failed")


def record_admin_audit(
    session,
    actor: AdminActor,
    action: str,
    target_user_id: Optional[str] = None,
    payload: Optional[dict] = None,
) -> None:
    """
    Record an admin action in the audit log, inside the caller's transaction.

    Args:
        session: Open session of the audited change (not committed here)
        actor: Authenticated admin (only its hashed id is stored)
        action: Action name (e.g., "override_subscription")
        target_user_id: User affected by action (optional)
        payload: Additional context as dict (will be JSON-serialized)

    Raises:
        AdminAuditWriteError: the audit row could not be written
    """
    payload_json = json.dumps(payload, default=str) if payload else None
    try:
        session.execute(
            insert(billing_admin_audit).values(
                actor_id=actor.actor_id,
                auth_mechanism=actor.auth_mechanism,
                action=action,
                target_user_id=target_user_id,
                payload_json=payload_json,
            )
        )
    except Exception as e:
        logger.error(
            "[admin_billing] audit write failed",
            extra={"user_id": target_user_id, "error_code": "admin_audit_failed"},
            exc_info=True,
        )
        raise AdminAuditWriteError(f"Admin audit write failed: {e}") from e


def override_subscription(
    actor: AdminActor,
    user_id: str,
    plan: str,
    status: str,
    *,
    reconciler: Optional[Reconciler] = None,
    now: Optional[datetime] = None,
) -> EntitlementRecord:
    """
    Set a user's plan and status by hand.

    Raises:
        ValidationError: invalid plan or status (nothing written)
        NotFoundError: unknown user (nothing written)
        AdminAuditWriteError: audit failed (override rolled back)
    """
    reconciler = reconciler or Reconciler()
    with get_db_session() as session:
        record = reconciler.apply_admin_override(user_id, plan, status, now=now, session=session)
        record_admin_audit(
            session,
            actor,
            "override_subscription",
            target_user_id=user_id,
            payload={
                "plan": record.plan.value,
                "status": record.status.value,
                "current_period_end": record.current_period_end,
            },
        )
    logger.info(
        "[admin_billing] subscription overridden",
        extra={"user_id": user_id, "plan": record.plan.value, "status": record.status.value},
    )
    return record


def get_webhook_events(
    user_id: Optional[str] = None,
    limit: int = 50,
    outcome: Optional[str] = None,
) -> list[dict]:
    """
    Get webhook ledger entries, most recent first.

    Args:
        user_id: Filter by resolved user
        limit: Max results (max 500)
        outcome: One of LEDGER_OUTCOMES
    """
    limit = min(limit, 500)

    with get_db_session() as session:
        query = select(billing_events)
        if user_id:
            query = query.where(billing_events.c.user_id == user_id)
        if outcome:
            query = query.where(billing_events.c.outcome == outcome)
        query = query.order_by(
            billing_events.c.received_at.desc(),
            billing_events.c.id.desc(),
        ).limit(limit)

        events = session.execute(query).fetchall()

    return [
        {
            "id": e.id,
            "stripe_event_id": e.stripe_event_id,
            "event_type": e.event_type,
            "outcome": e.outcome,
            "user_id": e.user_id,
            "received_at": e.received_at.isoformat() if e.received_at else None,
            "processed_at": e.processed_at.isoformat() if e.processed_at else None,
            "error": e.error,
        }
        for e in events
    ]
