"""
billing_engine/features/entitlements/evaluator.py

Entitlement evaluator: read path for access decisions.

Handles:
- Lazy trial expiry and quota rollover on every read
- Fire-and-forget write-back of those corrections (caller never waits)
- Structured access decisions for gating callers (no exceptions)
"""

from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Set
import logging
import threading

from billing_engine.core.config import settings
from billing_engine.features.billing.reconciler import LazyCorrection, lazy_corrections
from billing_engine.features.entitlements.clock import normalize_now
from billing_engine.features.entitlements.store import EntitlementStore, get_store
from billing_engine.models.entitlement import (
    ACTIVE_STATUSES,
    EffectiveEntitlement,
    EntitlementRecord,
    PLAN_LIMITS,
    Plan,
)


logger = logging.getLogger(__name__)

_executor: Optional[ThreadPoolExecutor] = None
_executor_lock = threading.Lock()
_pending: Set[Future] = set()


def _get_executor() -> ThreadPoolExecutor:
    global _executor
    with _executor_lock:
        if _executor is None:
            _executor = ThreadPoolExecutor(
                max_workers=settings.WRITE_BACK_WORKERS,
                thread_name_prefix="entitlement-write-back",
            )
        return _executor


def _write_back(store: EntitlementStore, user_id: str, correction: LazyCorrection, now: datetime) -> None:
    if correction.trial_expired:
        store.expire_trial(user_id, now)
    if correction.quota_rolled_over:
        store.roll_over_quota(user_id, now, correction.next_reset)


def _run_write_back(store: EntitlementStore, user_id: str, correction: LazyCorrection, now: datetime) -> None:
    try:
        _write_back(store, user_id, correction, now)
    except Exception as e:
        # The next read recomputes the same correction.
        logger.error(
            "[evaluator] lazy write-back failed",
            extra={"user_id": user_id, "error_code": getattr(e, "code", "write_back_failed")},
            exc_info=True,
        )


def _forget(future: Future) -> None:
    with _executor_lock:
        _pending.discard(future)


def schedule_write_back(
    store: EntitlementStore,
    user_id: str,
    correction: LazyCorrection,
    now: datetime,
) -> Future:
    future = _get_executor().submit(_run_write_back, store, user_id, correction, now)
    with _executor_lock:
        _pending.add(future)
    future.add_done_callback(_forget)
    return future


def drain_write_backs(timeout: Optional[float] = None) -> bool:
    """Wait for scheduled write-backs. Returns False if some were still running at timeout."""
    with _executor_lock:
        pending = set(_pending)
    if not pending:
        return True
    _, not_done = wait(pending, timeout=timeout)
    return not not_done


def shutdown_write_backs(timeout: Optional[float] = None) -> None:
    global _executor
    drain_write_backs(timeout)
    with _executor_lock:
        executor, _executor = _executor, None
    if executor is not None:
        executor.shutdown(wait=False)


def derive(record: EntitlementRecord) -> EffectiveEntitlement:
    limits = PLAN_LIMITS[record.plan]
    scans_limit = limits.scans
    remaining = None if scans_limit is None else max(scans_limit - record.scans_used, 0)
    return EffectiveEntitlement(
        user_id=record.user_id,
        plan=record.plan,
        status=record.status,
        is_active=record.status in ACTIVE_STATUSES,
        scans_used=record.scans_used,
        scans_limit=scans_limit,
        scans_remaining=remaining,
        scans_reset_at=record.scans_reset_at,
        trial_end=record.trial_end,
        current_period_end=record.current_period_end,
        limits=limits,
    )


def evaluate(
    user_id: str,
    now: Optional[Any] = None,
    *,
    store: Optional[EntitlementStore] = None,
    sync_write_back: bool = False,
) -> EffectiveEntitlement:
    """
    Current entitlement for a user.

    The returned view already reflects trial expiry and quota rollover.
    Corrections are persisted in the background unless `sync_write_back`;
    a synthesized default (no row yet) is never written.

    Raises:
        StoreUnavailableError: the record could not be read
    """
    now = normalize_now(now)
    store = store or get_store()
    record = store.get(user_id, now=now)
    correction = lazy_corrections(record, now)

    if correction.changed and record.persisted:
        logger.info(
            "[evaluator] lazy correction",
            extra={
                "user_id": user_id,
                "trial_expired": correction.trial_expired,
                "quota_rolled_over": correction.quota_rolled_over,
            },
        )
        if sync_write_back:
            _write_back(store, user_id, correction, now)
        else:
            schedule_write_back(store, user_id, correction, now)

    return derive(correction.record)


class AccessStatus(str, Enum):
    """Outcome of a gating check."""
    ALLOW = "ALLOW"
    INACTIVE = "INACTIVE"
    UPGRADE_REQUIRED = "UPGRADE_REQUIRED"
    SCAN_LIMIT_REACHED = "SCAN_LIMIT_REACHED"


_REFUSAL_MESSAGES = {
    AccessStatus.INACTIVE: "Subscription inactive",
    AccessStatus.UPGRADE_REQUIRED: "Upgrade required",
    AccessStatus.SCAN_LIMIT_REACHED: "Monthly scan limit reached",
}


@dataclass(frozen=True)
class AccessDecision:
    status: AccessStatus
    entitlement: EffectiveEntitlement
    required_plan: Optional[Plan] = None

    @property
    def allowed(self) -> bool:
        return self.status == AccessStatus.ALLOW

    @property
    def message(self) -> Optional[str]:
        return _REFUSAL_MESSAGES.get(self.status)

    def to_payload(self) -> Dict[str, Any]:
        """Structured refusal for upgrade prompts."""
        ent = self.entitlement
        payload: Dict[str, Any] = {
            "allowed": self.allowed,
            "code": self.status.value,
            "current_plan": ent.plan.value,
            "status": ent.status.value,
        }
        if self.message:
            payload["error"] = self.message
        if self.required_plan is not None:
            payload["required_plan"] = self.required_plan.value
        if self.status == AccessStatus.SCAN_LIMIT_REACHED:
            payload["limit"] = ent.scans_limit
            payload["used"] = ent.scans_used
            payload["resets_at"] = ent.scans_reset_at.isoformat()
        return payload


def tier_decision(entitlement: EffectiveEntitlement, required: Plan) -> AccessDecision:
    required = Plan(required)
    if not entitlement.is_active:
        status = AccessStatus.INACTIVE
    elif not entitlement.has_tier(required):
        status = AccessStatus.UPGRADE_REQUIRED
    else:
        status = AccessStatus.ALLOW
    return AccessDecision(status=status, entitlement=entitlement, required_plan=required)


def scan_decision(entitlement: EffectiveEntitlement) -> AccessDecision:
    if not entitlement.is_active:
        status = AccessStatus.INACTIVE
    elif not entitlement.can_consume_scan:
        status = AccessStatus.SCAN_LIMIT_REACHED
    else:
        status = AccessStatus.ALLOW
    return AccessDecision(status=status, entitlement=entitlement)


def has_tier(user_id: str, required: Plan, now: Optional[Any] = None, *, store: Optional[EntitlementStore] = None) -> bool:
    return evaluate(user_id, now, store=store).has_tier(required)


def require_tier(
    user_id: str,
    required: Plan,
    now: Optional[Any] = None,
    *,
    store: Optional[EntitlementStore] = None,
) -> AccessDecision:
    decision = tier_decision(evaluate(user_id, now, store=store), required)
    if not decision.allowed:
        logger.info(
            "[evaluator] tier refused",
            extra={
                "user_id": user_id,
                "plan": decision.entitlement.plan.value,
                "status": decision.entitlement.status.value,
                "required_plan": decision.required_plan.value,
                "outcome": decision.status.value,
            },
        )
    return decision


def check_scan(user_id: str, now: Optional[Any] = None, *, store: Optional[EntitlementStore] = None) -> AccessDecision:
    """
    Gate a scan without counting it.

    A pending rollover is persisted before returning: the caller counts the
    scan next, and a rollover landing after that increment would erase it.
    """
    return scan_decision(evaluate(user_id, now, store=store, sync_write_back=True))
