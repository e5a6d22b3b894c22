"""
Reconciler: turns billing events and admin commands into entitlement writes.

Every transition computes the complete set of fields it owns and writes them
in one upsert, so applying the same event again rewrites identical values.
The only transitions that depend on the stored record are the read-time
corrections (trial expiry, quota rollover), and those only move forward.

Transition table:
    checkout completed      -> active|trialing, plan from price, subscription id, period end
    subscription updated    -> mirrored status, plan from price, period bounds
    subscription deleted    -> canceled + collector, subscription id cleared, period end = now
    payment failed          -> past_due (plan untouched)
    admin override          -> given plan/status, period end, counter reset
    lazy trial expiry       -> expired + collector
    lazy quota rollover     -> scans_used = 0, next reset boundary
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
import logging

from billing_engine.core.config import settings
from billing_engine.core.errors import NotFoundError, UnknownPriceError, ValidationError
from billing_engine.features.entitlements.clock import (
    add_months,
    next_reset_boundary,
    normalize_now,
    quota_stale,
    trial_expired,
)
from billing_engine.features.entitlements.store import EntitlementStore, get_store
from billing_engine.models.entitlement import (
    ACTIVE_STATUSES,
    EntitlementRecord,
    FREE_PLAN,
    Plan,
    SubscriptionStatus,
    parse_plan,
    parse_status,
)


logger = logging.getLogger(__name__)

# Billing-system subscription status -> local closed set
_STATUS_MAP = {
    "trialing": SubscriptionStatus.TRIALING,
    "active": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete": SubscriptionStatus.INCOMPLETE,
    "incomplete_expired": SubscriptionStatus.EXPIRED,
    "unpaid": SubscriptionStatus.PAST_DUE,
}


def map_billing_status(raw_status: Optional[str]) -> SubscriptionStatus:
    return _STATUS_MAP.get(raw_status or "", SubscriptionStatus.INCOMPLETE)


def configured_price_map() -> Dict[str, Plan]:
    """Map configured Stripe price ids to plan tiers."""
    pairs = [
        (settings.STRIPE_PRICE_CURATOR_MONTHLY, Plan.CURATOR),
        (settings.STRIPE_PRICE_CURATOR_ANNUAL, Plan.CURATOR),
        (settings.STRIPE_PRICE_ENTHUSIAST_MONTHLY, Plan.ENTHUSIAST),
        (settings.STRIPE_PRICE_ENTHUSIAST_ANNUAL, Plan.ENTHUSIAST),
    ]
    return {price_id: plan for price_id, plan in pairs if price_id}


def from_timestamp(value: Any) -> Optional[datetime]:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    return None


def _first_item(subscription: Dict[str, Any]) -> Dict[str, Any]:
    items = (subscription.get("items") or {}).get("data") or []
    return items[0] if items else {}


def subscription_price(subscription: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    price = _first_item(subscription).get("price")
    if isinstance(price, str):
        return {"id": price}
    return price or None


def subscription_period(subscription: Dict[str, Any]):
    """(start, end) of the current billing period; newer API versions carry them per item."""
    item = _first_item(subscription)
    start = from_timestamp(subscription.get("current_period_start")) or from_timestamp(item.get("current_period_start"))
    end = from_timestamp(subscription.get("current_period_end")) or from_timestamp(item.get("current_period_end"))
    return start, end


def _price_tier_metadata(price: Dict[str, Any]) -> Optional[Plan]:
    tier = (price.get("metadata") or {}).get("tier")
    product = price.get("product")
    if not tier and isinstance(product, dict):
        tier = (product.get("metadata") or {}).get("tier")
    return parse_plan(tier) if tier else None


def resolve_plan(
    price: Optional[Dict[str, Any]],
    price_map: Dict[str, Plan],
    *,
    strict: bool = False,
    event_id: Optional[str] = None,
) -> Plan:
    """
    Resolve a plan tier from a line-item price.

    Lookup order: configured price id, then `tier` metadata on the price or
    its expanded product. Unresolved prices fall back to the free tier with a
    warning, or raise UnknownPriceError when strict.
    """
    price_id = (price or {}).get("id")
    if price_id and price_id in price_map:
        return price_map[price_id]

    if price:
        plan = _price_tier_metadata(price)
        if plan is not None:
            return plan

    if strict:
        raise UnknownPriceError(
            f"Unknown price id {price_id!r}",
            details={"price_id": price_id, "event_id": event_id},
        )

    logger.warning(
        "[reconciler] unknown price, falling back to %s",
        FREE_PLAN.value,
        extra={"event_id": event_id, "price_id": price_id, "plan": FREE_PLAN.value},
    )
    return FREE_PLAN


def _trial_fields(subscription: Dict[str, Any], status: SubscriptionStatus, period_end: Optional[datetime], now: datetime) -> Dict[str, Any]:
    # Trial bounds only exist while trialing; a converted trial clears them.
    if status != SubscriptionStatus.TRIALING:
        return {"trial_start": None, "trial_end": None}
    trial_start = from_timestamp(subscription.get("trial_start")) or now
    trial_end = (
        from_timestamp(subscription.get("trial_end"))
        or period_end
        or now + timedelta(days=settings.TRIAL_DAYS)
    )
    return {"trial_start": trial_start, "trial_end": trial_end}


def checkout_completed_state(
    subscription: Dict[str, Any],
    plan: Plan,
    now: datetime,
    customer_id: Optional[str] = None,
) -> Dict[str, Any]:
    status = (
        SubscriptionStatus.TRIALING
        if subscription.get("status") == "trialing"
        else SubscriptionStatus.ACTIVE
    )
    _, period_end = subscription_period(subscription)
    fields: Dict[str, Any] = {
        "plan": plan,
        "status": status,
        "billing_subscription_id": subscription.get("id"),
    }
    if period_end:
        fields["current_period_end"] = period_end
    fields.update(_trial_fields(subscription, status, period_end, now))
    if customer_id:
        fields["billing_customer_id"] = customer_id
    return fields


def subscription_updated_state(
    subscription: Dict[str, Any],
    plan: Plan,
    now: datetime,
    customer_id: Optional[str] = None,
) -> Dict[str, Any]:
    status = map_billing_status(subscription.get("status"))
    period_start, period_end = subscription_period(subscription)
    fields: Dict[str, Any] = {
        "plan": plan,
        "status": status,
        "billing_subscription_id": subscription.get("id"),
    }
    if period_start:
        fields["current_period_start"] = period_start
    if period_end:
        fields["current_period_end"] = period_end
    fields.update(_trial_fields(subscription, status, period_end, now))
    if customer_id:
        fields["billing_customer_id"] = customer_id
    return fields


def subscription_deleted_state(now: datetime) -> Dict[str, Any]:
    return {
        "plan": FREE_PLAN,
        "status": SubscriptionStatus.CANCELED,
        "billing_subscription_id": None,
        "current_period_end": now,
    }


def payment_failed_state() -> Dict[str, Any]:
    # Status only: a failed payment does not change the tier.
    return {"status": SubscriptionStatus.PAST_DUE}


def admin_override_state(plan: Plan, status: SubscriptionStatus, now: datetime) -> Dict[str, Any]:
    activating = status in ACTIVE_STATUSES
    period_end = add_months(now, settings.ADMIN_OVERRIDE_PERIOD_MONTHS) if activating else now
    trialing = status == SubscriptionStatus.TRIALING
    return {
        "plan": plan,
        "status": status,
        "current_period_start": now,
        "current_period_end": period_end,
        "trial_start": now if trialing else None,
        "trial_end": now + timedelta(days=settings.TRIAL_DAYS) if trialing else None,
        "scans_used": 0,
        "scans_reset_at": next_reset_boundary(now),
    }


@dataclass(frozen=True)
class LazyCorrection:
    """Result of applying read-time corrections to a record."""
    record: EntitlementRecord
    trial_expired: bool
    quota_rolled_over: bool
    next_reset: Optional[datetime] = None

    @property
    def changed(self) -> bool:
        return self.trial_expired or self.quota_rolled_over


def lazy_corrections(record: EntitlementRecord, now: datetime) -> LazyCorrection:
    """Apply trial expiry and quota rollover in memory."""
    updates: Dict[str, Any] = {}
    expired = trial_expired(record, now)
    if expired:
        updates["plan"] = FREE_PLAN
        updates["status"] = SubscriptionStatus.EXPIRED

    rolled = quota_stale(record, now)
    next_reset = None
    if rolled:
        next_reset = next_reset_boundary(now)
        updates["scans_used"] = 0
        updates["scans_reset_at"] = next_reset

    corrected = record.model_copy(update=updates) if updates else record
    return LazyCorrection(
        record=corrected,
        trial_expired=expired,
        quota_rolled_over=rolled,
        next_reset=next_reset,
    )


class Reconciler:
    """Applies transitions to the entitlement store."""

    def __init__(
        self,
        store: Optional[EntitlementStore] = None,
        price_map: Optional[Dict[str, Plan]] = None,
        strict_price_mapping: Optional[bool] = None,
    ):
        self.store = store or get_store()
        self._price_map = price_map
        self._strict = strict_price_mapping

    @property
    def price_map(self) -> Dict[str, Plan]:
        return self._price_map if self._price_map is not None else configured_price_map()

    @property
    def strict_price_mapping(self) -> bool:
        return self._strict if self._strict is not None else settings.STRICT_PRICE_MAPPING

    def plan_for_subscription(self, subscription: Dict[str, Any], event_id: Optional[str] = None) -> Plan:
        return resolve_plan(
            subscription_price(subscription),
            self.price_map,
            strict=self.strict_price_mapping,
            event_id=event_id,
        )

    def _write(self, transition: str, user_id: str, fields: Dict[str, Any], now: datetime, session=None) -> EntitlementRecord:
        record = self.store.upsert(user_id, fields, now=now, session=session)
        logger.info(
            "[reconciler] %s applied",
            transition,
            extra={
                "user_id": user_id,
                "plan": record.plan.value,
                "status": record.status.value,
            },
        )
        return record

    def apply_checkout_completed(
        self,
        user_id: str,
        subscription: Dict[str, Any],
        *,
        customer_id: Optional[str] = None,
        event_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> EntitlementRecord:
        now = normalize_now(now)
        plan = self.plan_for_subscription(subscription, event_id)
        fields = checkout_completed_state(subscription, plan, now, customer_id)
        return self._write("checkout_completed", user_id, fields, now)

    def apply_subscription_updated(
        self,
        user_id: str,
        subscription: Dict[str, Any],
        *,
        customer_id: Optional[str] = None,
        event_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> EntitlementRecord:
        now = normalize_now(now)
        plan = self.plan_for_subscription(subscription, event_id)
        fields = subscription_updated_state(subscription, plan, now, customer_id)
        return self._write("subscription_updated", user_id, fields, now)

    def apply_subscription_deleted(self, user_id: str, *, now: Optional[datetime] = None) -> EntitlementRecord:
        now = normalize_now(now)
        return self._write("subscription_deleted", user_id, subscription_deleted_state(now), now)

    def apply_payment_failed(self, user_id: str, *, now: Optional[datetime] = None) -> EntitlementRecord:
        now = normalize_now(now)
        return self._write("payment_failed", user_id, payment_failed_state(), now)

    def apply_admin_override(
        self,
        user_id: str,
        plan: Any,
        status: Any,
        *,
        now: Optional[datetime] = None,
        session=None,
    ) -> EntitlementRecord:
        """
        Set plan and status explicitly.

        With `session` the write joins the caller's transaction.

        Raises:
            ValidationError: plan or status is not a member of its closed set
            NotFoundError: the user is unknown
        """
        parsed_plan = parse_plan(plan) if isinstance(plan, str) else None
        if parsed_plan is None:
            raise ValidationError(
                f"Invalid plan. Must be one of: {', '.join(p.value for p in Plan)}",
                code="invalid_plan",
            )
        parsed_status = parse_status(status) if isinstance(status, str) else None
        if parsed_status is None:
            raise ValidationError(
                f"Invalid status. Must be one of: {', '.join(s.value for s in SubscriptionStatus)}",
                code="invalid_status",
            )
        if not self.store.user_exists(user_id):
            raise NotFoundError("User not found", code="user_not_found")

        now = normalize_now(now)
        return self._write(
            "admin_override", user_id, admin_override_state(parsed_plan, parsed_status, now), now, session=session
        )
