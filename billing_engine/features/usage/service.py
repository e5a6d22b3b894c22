"""
billing_engine/features/usage/service.py

Usage counter for metered actions (monthly AI scans).

Handles:
- Atomic scan increments (single statement, never read-then-write)
- Bounded consumption: gate and count in one step
"""

from datetime import datetime
from typing import Any, Optional
import logging

from billing_engine.features.entitlements.clock import normalize_now
from billing_engine.features.entitlements.evaluator import (
    AccessDecision,
    AccessStatus,
    derive,
    evaluate,
    scan_decision,
)
from billing_engine.features.entitlements.store import EntitlementStore, get_store


logger = logging.getLogger(__name__)


def increment_scan(user_id: str, now: Optional[datetime] = None, *, store: Optional[EntitlementStore] = None) -> None:
    """
    Count one scan for a user after a successful gated action.

    Does not re-run quota rollover; that is strictly a read-time concern.

    Raises:
        StoreUnavailableError: the counter could not be written
    """
    store = store or get_store()
    store.increment_scans(user_id, now=normalize_now(now))


# Alias used by feature endpoints that check first and count on success.
record_scan = increment_scan


def consume_scan(user_id: str, now: Optional[Any] = None, *, store: Optional[EntitlementStore] = None) -> AccessDecision:
    """
    Gate and count one scan.

    The increment is conditional on the stored counter still being under the
    plan limit, so concurrent consumers cannot overshoot it. A pending
    rollover is persisted first, otherwise the stored counter would still
    hold last month's usage.
    """
    now = normalize_now(now)
    store = store or get_store()
    entitlement = evaluate(user_id, now, store=store, sync_write_back=True)
    decision = scan_decision(entitlement)
    if not decision.allowed:
        logger.info(
            "[usage] scan refused",
            extra={"user_id": user_id, "plan": entitlement.plan.value, "outcome": decision.status.value},
        )
        return decision

    counted = store.increment_scans(user_id, now=now, limit=entitlement.scans_limit)
    if not counted:
        # Lost the race for the last scans of the window.
        refreshed = derive(store.get(user_id, now=now))
        logger.info(
            "[usage] scan refused",
            extra={"user_id": user_id, "plan": refreshed.plan.value, "outcome": AccessStatus.SCAN_LIMIT_REACHED.value},
        )
        return AccessDecision(status=AccessStatus.SCAN_LIMIT_REACHED, entitlement=refreshed)

    updated = entitlement.model_copy(update={
        "scans_used": entitlement.scans_used + 1,
        "scans_remaining": (
            None if entitlement.scans_remaining is None else max(entitlement.scans_remaining - 1, 0)
        ),
    })
    return AccessDecision(status=AccessStatus.ALLOW, entitlement=updated)
