"""
Quota clock: pure time checks applied to entitlement records on read.

Nothing here touches the store. All datetimes are handled as UTC; naive
values (e.g. read back from SQLite) are taken to be UTC.
"""

import calendar
from datetime import datetime, timezone
from typing import Optional, Any

from billing_engine.models.entitlement import EntitlementRecord, SubscriptionStatus


def normalize_now(now: Optional[Any] = None) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    return as_utc(now)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def trial_expired(record: EntitlementRecord, now: datetime) -> bool:
    """True iff the record is trialing and its trial ended before `now`."""
    if record.status != SubscriptionStatus.TRIALING or record.trial_end is None:
        return False
    return as_utc(record.trial_end) < as_utc(now)


def quota_stale(record: EntitlementRecord, now: datetime) -> bool:
    """True iff the scan counter's reset moment has been reached."""
    return as_utc(record.scans_reset_at) <= as_utc(now)


def next_reset_boundary(now: datetime) -> datetime:
    """First instant (00:00 UTC) of the calendar month after `now`."""
    now = as_utc(now)
    if now.month == 12:
        return datetime(now.year + 1, 1, 1, tzinfo=timezone.utc)
    return datetime(now.year, now.month + 1, 1, tzinfo=timezone.utc)


def add_months(value: datetime, months: int) -> datetime:
    """Same wall-clock time `months` later, clamped to the target month's last day."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)
