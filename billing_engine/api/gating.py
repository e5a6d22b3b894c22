"""
Gating dependencies for feature endpoints.

Usage:
    @router.post("/identify")
    def identify(decision: AccessDecision = Depends(require_scan_quota)):
        ...
        record_scan(decision.entitlement.user_id)

    @router.post("/playlist", dependencies=[Depends(require_plan(Plan.CURATOR))])
    def playlist(...):
        ...
"""
from fastapi import Depends, HTTPException, Request

from billing_engine.core.errors import GateRefusedError, ValidationError
from billing_engine.features.entitlements.evaluator import (
    AccessDecision,
    check_scan,
    require_tier,
)
from billing_engine.models.entitlement import Plan, parse_plan


def get_current_user_id(request: Request) -> str:
    """User id placed on request.state by the auth layer."""
    user_id = getattr(request.state, "user_id", None)
    if not user_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user_id


def refuse(decision: AccessDecision) -> GateRefusedError:
    return GateRefusedError(
        decision.message or "Access denied",
        code=decision.status.value.lower(),
        details=decision.to_payload(),
    )


def parse_required_plan(value: str) -> Plan:
    plan = parse_plan(value)
    if plan is None:
        raise ValidationError(
            f"Invalid tier. Must be one of: {', '.join(p.value for p in Plan)}",
            code="invalid_plan",
        )
    return plan


def require_plan(required: Plan):
    """Dependency factory: refuse unless the user is active on `required` or higher."""
    required = Plan(required)

    def dependency(user_id: str = Depends(get_current_user_id)) -> AccessDecision:
        decision = require_tier(user_id, required)
        if not decision.allowed:
            raise refuse(decision)
        return decision

    return dependency


def require_scan_quota(user_id: str = Depends(get_current_user_id)) -> AccessDecision:
    """Refuse when the user has no scans left. Does not count the scan."""
    decision = check_scan(user_id)
    if not decision.allowed:
        raise refuse(decision)
    return decision
