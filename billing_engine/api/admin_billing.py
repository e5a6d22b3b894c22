"""
Admin-only billing operations router.
Requires X-Admin-Key header for all endpoints.
Handles manual subscription overrides and webhook ledger inspection.
"""

import logging
from typing import Optional, List

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from billing_engine.core.admin_auth import require_admin, AdminActor
from billing_engine.core.errors import ValidationError
from billing_engine.features.billing.admin_service import (
    LEDGER_OUTCOMES,
    get_webhook_events,
    override_subscription,
)

logger = logging.getLogger(__name__)

router = APIRouter()


# ============================================================================
# Pydantic Models
# ============================================================================

class SubscriptionOverrideRequest(BaseModel):
    """Plan and status are validated against their closed sets by the service."""
    plan: str = Field(..., description="collector | curator | enthusiast")
    status: str = Field(..., description="trialing | active | past_due | canceled | incomplete | expired")


class SubscriptionOverrideResponse(BaseModel):
    success: bool
    user_id: str
    plan: str
    status: str
    current_period_end: Optional[str]
    scans_used: int
    scans_reset_at: str


class BillingEventListItem(BaseModel):
    id: int
    stripe_event_id: str
    event_type: str
    outcome: str
    user_id: Optional[str]
    received_at: Optional[str]
    processed_at: Optional[str]
    error: Optional[str]


class BillingEventListResponse(BaseModel):
    total: int
    events: List[BillingEventListItem]


# ============================================================================
# Endpoints
# ============================================================================

@router.put("/api/admin/customers/{user_id}/subscription", response_model=SubscriptionOverrideResponse)
def override_customer_subscription(
    user_id: str,
    request: SubscriptionOverrideRequest,
    actor: AdminActor = Depends(require_admin),
):
    """
    Set a customer's plan and status.

    Errors:
        400: Invalid plan or status
        404: Unknown user
    """
    record = override_subscription(actor, user_id, request.plan, request.status)
    return SubscriptionOverrideResponse(
        success=True,
        user_id=record.user_id,
        plan=record.plan.value,
        status=record.status.value,
        current_period_end=record.current_period_end.isoformat() if record.current_period_end else None,
        scans_used=record.scans_used,
        scans_reset_at=record.scans_reset_at.isoformat(),
    )


@router.get("/api/admin/billing/events", response_model=BillingEventListResponse)
def list_billing_events(
    user_id: Optional[str] = Query(None),
    outcome: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    actor: AdminActor = Depends(require_admin),
):
    if outcome and outcome not in LEDGER_OUTCOMES:
        raise ValidationError(
            f"Invalid outcome. Must be one of: {', '.join(LEDGER_OUTCOMES)}",
            code="invalid_outcome",
        )
    events = get_webhook_events(user_id=user_id, limit=limit, outcome=outcome)
    return BillingEventListResponse(
        total=len(events),
        events=[BillingEventListItem(**e) for e in events],
    )
