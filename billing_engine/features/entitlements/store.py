"""
billing_engine/features/entitlements/store.py

Entitlement store: repository over the `subscriptions` table.

Handles:
- Reads that synthesize a free-tier default when no row exists (no write)
- Full-field upserts (each call is a single transaction)
- Guarded lazy corrections (trial expiry, quota rollover)
- Atomic scan counter increments

Any SQLAlchemy failure surfaces as StoreUnavailableError.
"""

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, Optional
import logging

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError

from billing_engine.core.database import get_db_session, subscriptions, users
from billing_engine.core.errors import StoreUnavailableError
from billing_engine.features.entitlements.clock import as_utc, next_reset_boundary, normalize_now
from billing_engine.models.entitlement import (
    EntitlementRecord,
    FREE_PLAN,
    Plan,
    SubscriptionStatus,
)


logger = logging.getLogger(__name__)

_DATETIME_FIELDS = (
    "trial_start",
    "trial_end",
    "current_period_start",
    "current_period_end",
    "scans_reset_at",
)

WRITABLE_FIELDS = frozenset({
    "plan",
    "status",
    "trial_start",
    "trial_end",
    "billing_customer_id",
    "billing_subscription_id",
    "current_period_start",
    "current_period_end",
    "scans_used",
    "scans_reset_at",
})


def dialect_insert(session):
    name = session.get_bind().dialect.name
    if name == "postgresql":
        return pg_insert
    if name == "sqlite":
        return sqlite_insert
    raise StoreUnavailableError(f"Unsupported database dialect for upserts: {name}")


def _to_db(fields: Dict[str, Any]) -> Dict[str, Any]:
    unknown = set(fields) - WRITABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown entitlement fields: {sorted(unknown)}")
    values = {}
    for key, value in fields.items():
        if isinstance(value, (Plan, SubscriptionStatus)):
            value = value.value
        elif isinstance(value, datetime):
            value = as_utc(value)
        values[key] = value
    return values


def _row_to_record(row) -> EntitlementRecord:
    data = {
        "user_id": row.user_id,
        "plan": Plan(row.plan),
        "status": SubscriptionStatus(row.status),
        "billing_customer_id": row.billing_customer_id,
        "billing_subscription_id": row.billing_subscription_id,
        "scans_used": row.scans_used,
    }
    for field in _DATETIME_FIELDS:
        value = getattr(row, field)
        data[field] = as_utc(value) if value is not None else None
    return EntitlementRecord(**data)


def default_record(user_id: str, now: datetime) -> EntitlementRecord:
    """Free-tier record for a user with no row yet."""
    return EntitlementRecord(
        user_id=user_id,
        plan=FREE_PLAN,
        status=SubscriptionStatus.ACTIVE,
        scans_used=0,
        scans_reset_at=now,
        persisted=False,
    )


class EntitlementStore:
    """Repository for entitlement records keyed by user id."""

    def __init__(self, session_factory: Callable = get_db_session):
        self._session_factory = session_factory

    @contextmanager
    def _session(self, operation: str, session=None):
        """Own transaction, or join the caller's `session` (caller commits)."""
        try:
            if session is not None:
                yield session
                return
            with self._session_factory() as own:
                yield own
        except SQLAlchemyError as e:
            logger.error(
                "[entitlement_store] %s failed",
                operation,
                extra={"error_code": "store_unavailable"},
                exc_info=True,
            )
            raise StoreUnavailableError(
                f"Entitlement store unavailable during {operation}"
            ) from e

    def _select_one(self, session, *criteria) -> Optional[EntitlementRecord]:
        row = session.execute(
            select(subscriptions).where(*criteria).limit(1)
        ).fetchone()
        return _row_to_record(row) if row else None

    def get(self, user_id: str, now: Optional[datetime] = None) -> EntitlementRecord:
        """Return the user's record, or a synthesized free-tier default (not written)."""
        with self._session("get") as session:
            record = self._select_one(session, subscriptions.c.user_id == user_id)
        if record is None:
            return default_record(user_id, normalize_now(now))
        return record

    def find_by_customer(self, customer_id: str) -> Optional[EntitlementRecord]:
        with self._session("find_by_customer") as session:
            return self._select_one(session, subscriptions.c.billing_customer_id == customer_id)

    def find_by_subscription(self, subscription_id: str) -> Optional[EntitlementRecord]:
        with self._session("find_by_subscription") as session:
            return self._select_one(session, subscriptions.c.billing_subscription_id == subscription_id)

    def upsert(
        self,
        user_id: str,
        fields: Dict[str, Any],
        now: Optional[datetime] = None,
        *,
        session=None,
    ) -> EntitlementRecord:
        """
        Overwrite the given fields, materializing the row if needed.

        Insert defaults are the free tier with a fresh counter that resets at
        the next month boundary, which is what a read of the synthesized
        default already reported.
        """
        now = normalize_now(now)
        values = _to_db(fields)
        insert_values = {
            "user_id": user_id,
            "plan": FREE_PLAN.value,
            "status": SubscriptionStatus.ACTIVE.value,
            "scans_used": 0,
            "scans_reset_at": next_reset_boundary(now),
            "updated_at": now,
        }
        insert_values.update(values)

        with self._session("upsert", session) as session:
            insert = dialect_insert(session)
            stmt = insert(subscriptions).values(**insert_values)
            if values:
                stmt = stmt.on_conflict_do_update(
                    index_elements=[subscriptions.c.user_id],
                    set_={**values, "updated_at": now},
                )
            else:
                stmt = stmt.on_conflict_do_nothing(index_elements=[subscriptions.c.user_id])
            session.execute(stmt)
            record = self._select_one(session, subscriptions.c.user_id == user_id)
        return record

    def expire_trial(self, user_id: str, now: datetime) -> bool:
        """Downgrade a lapsed trial. No-op unless the row is still an expired trial."""
        now = normalize_now(now)
        with self._session("expire_trial") as session:
            result = session.execute(
                update(subscriptions)
                .where(subscriptions.c.user_id == user_id)
                .where(subscriptions.c.status == SubscriptionStatus.TRIALING.value)
                .where(subscriptions.c.trial_end < now)
                .values(
                    plan=FREE_PLAN.value,
                    status=SubscriptionStatus.EXPIRED.value,
                    updated_at=now,
                )
            )
        return result.rowcount > 0

    def roll_over_quota(self, user_id: str, now: datetime, next_reset: datetime) -> bool:
        """Reset the scan counter. No-op unless the row's window has actually lapsed."""
        now = normalize_now(now)
        with self._session("roll_over_quota") as session:
            result = session.execute(
                update(subscriptions)
                .where(subscriptions.c.user_id == user_id)
                .where(subscriptions.c.scans_reset_at <= now)
                .values(
                    scans_used=0,
                    scans_reset_at=as_utc(next_reset),
                    updated_at=now,
                )
            )
        return result.rowcount > 0

    def increment_scans(self, user_id: str, now: Optional[datetime] = None, limit: Optional[int] = None) -> bool:
        """
        Atomically add one scan to the counter in a single statement.

        With `limit`, the increment only happens while scans_used < limit.
        Returns False when the limit prevented the increment.
        """
        now = normalize_now(now)
        with self._session("increment_scans") as session:
            insert = dialect_insert(session)
            stmt = insert(subscriptions).values(
                user_id=user_id,
                plan=FREE_PLAN.value,
                status=SubscriptionStatus.ACTIVE.value,
                scans_used=1,
                scans_reset_at=next_reset_boundary(now),
                updated_at=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[subscriptions.c.user_id],
                set_={
                    "scans_used": subscriptions.c.scans_used + 1,
                    "updated_at": now,
                },
                where=(subscriptions.c.scans_used < limit) if limit is not None else None,
            )
            result = session.execute(stmt)
        return result.rowcount > 0

    def user_exists(self, user_id: str) -> bool:
        """Known to the identity layer, or already holding an entitlement row."""
        with self._session("user_exists") as session:
            row = session.execute(
                select(users.c.user_id).where(users.c.user_id == user_id).limit(1)
            ).fetchone()
            if row:
                return True
            row = session.execute(
                select(subscriptions.c.user_id).where(subscriptions.c.user_id == user_id).limit(1)
            ).fetchone()
        return row is not None


_default_store: Optional[EntitlementStore] = None


def get_store() -> EntitlementStore:
    global _default_store
    if _default_store is None:
        _default_store = EntitlementStore()
    return _default_store
