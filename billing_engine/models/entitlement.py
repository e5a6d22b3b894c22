"""
billing_engine/models/entitlement.py

Entitlement record and derived views.

A user's entitlement is one row: plan tier, subscription status, trial and
billing-period bounds, billing references, and the monthly scan counter.
Plan limits are static configuration, not stored state.
"""

from datetime import datetime
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict


class Plan(str, Enum):
    """Plan tier, strictly ordered: collector < curator < enthusiast."""
    COLLECTOR = "collector"
    CURATOR = "curator"
    ENTHUSIAST = "enthusiast"


class SubscriptionStatus(str, Enum):
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    EXPIRED = "expired"


TIER_RANK: Dict[Plan, int] = {
    Plan.COLLECTOR: 0,
    Plan.CURATOR: 1,
    Plan.ENTHUSIAST: 2,
}

ACTIVE_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING})

FREE_PLAN = Plan.COLLECTOR


class PlanLimits(BaseModel):
    """Per-plan caps; None means unlimited."""
    model_config = ConfigDict(frozen=True)

    scans: Optional[int]
    albums: Optional[int]
    gear: Optional[int]


PLAN_LIMITS: Dict[Plan, PlanLimits] = {
    Plan.COLLECTOR: PlanLimits(scans=10, albums=100, gear=3),
    Plan.CURATOR: PlanLimits(scans=None, albums=None, gear=None),
    Plan.ENTHUSIAST: PlanLimits(scans=None, albums=None, gear=None),
}


def tier_rank(plan: Plan) -> int:
    return TIER_RANK[Plan(plan)]


def parse_plan(value: str) -> Optional[Plan]:
    try:
        return Plan(value)
    except ValueError:
        return None


def parse_status(value: str) -> Optional[SubscriptionStatus]:
    try:
        return SubscriptionStatus(value)
    except ValueError:
        return None


class EntitlementRecord(BaseModel):
    """
    Persisted entitlement state for one user.

    `persisted` is False for the free-tier default synthesized when no row
    exists yet; such a record is never written back on read.
    """
    model_config = ConfigDict(frozen=True)

    user_id: str
    plan: Plan = Plan.COLLECTOR
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    billing_customer_id: Optional[str] = None
    billing_subscription_id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    scans_used: int = 0
    scans_reset_at: datetime
    persisted: bool = True


class EffectiveEntitlement(BaseModel):
    """Point-in-time answer to "what may this user do right now"."""
    model_config = ConfigDict(frozen=True)

    user_id: str
    plan: Plan
    status: SubscriptionStatus
    is_active: bool
    scans_used: int
    scans_limit: Optional[int]
    scans_remaining: Optional[int]  # None = unlimited
    scans_reset_at: datetime
    trial_end: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    limits: PlanLimits

    @property
    def unlimited_scans(self) -> bool:
        return self.scans_limit is None

    def has_tier(self, required: Plan) -> bool:
        return tier_rank(self.plan) >= tier_rank(required)

    @property
    def can_consume_scan(self) -> bool:
        if not self.is_active:
            return False
        return self.scans_limit is None or self.scans_used < self.scans_limit
