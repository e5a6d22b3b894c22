"""
Billing API routes.

Minimal surface:
- POST /api/billing/webhook: Handle Stripe webhooks
- GET  /api/billing/entitlement: Current user's effective entitlement
- GET  /api/billing/access?tier=: Tier check as data (never refuses)
- POST /api/billing/scans/consume: Gate and count one scan
"""
import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from billing_engine.api.gating import get_current_user_id, parse_required_plan, refuse
from billing_engine.core.config import billing_enabled, settings
from billing_engine.core.logging import log_event
from billing_engine.features.billing.provider import BillingProvider
from billing_engine.features.billing.service import (
    get_provider,
    handle_verified_event,
    verify_webhook,
)
from billing_engine.features.entitlements.evaluator import evaluate, require_tier
from billing_engine.features.usage.service import consume_scan


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


def get_billing_provider() -> BillingProvider:
    return get_provider()


@router.post("/webhook")
async def handle_webhook(request: Request, provider: BillingProvider = Depends(get_billing_provider)):
    """
    Handle Stripe webhook events.

    Verifies the signature against the raw body, then processes the event
    within WEBHOOK_PROCESSING_BUDGET_SECONDS. A verified event is always
    acknowledged, including when processing fails or overruns the budget.

    Returns:
        {"received": true, "event_id": str, "outcome": str}

    Errors:
        400: Invalid signature or payload
        503: Billing disabled
    """
    if not billing_enabled():
        raise HTTPException(
            status_code=503,
            detail={"error": "Billing disabled", "code": "billing_disabled"},
        )

    # Raw body is required for signature verification
    body = await request.body()
    headers = dict(request.headers)

    event = verify_webhook(headers, body, provider)
    logger.info(
        "[billing_webhook] received",
        extra={"event_id": event.event_id, "event_type": event.event_type},
    )

    budget = settings.WEBHOOK_PROCESSING_BUDGET_SECONDS
    try:
        result = await asyncio.wait_for(
            asyncio.to_thread(handle_verified_event, event, provider=provider),
            timeout=budget,
        )
    except asyncio.TimeoutError:
        # The worker thread keeps going; its outcome lands in the ledger.
        log_event(
            "warning",
            "[billing_webhook] processing over budget, acknowledging",
            event_id=event.event_id,
            event_type=event.event_type,
            extra={"budget_seconds": budget},
        )
        return {"received": True, "event_id": event.event_id, "outcome": "deferred"}

    return {"received": True, "event_id": result.event_id, "outcome": result.outcome}


@router.get("/entitlement")
def get_entitlement(user_id: str = Depends(get_current_user_id)):
    """Plan, status and scan quota as of now."""
    entitlement = evaluate(user_id)
    payload = entitlement.model_dump(mode="json")
    payload["can_consume_scan"] = entitlement.can_consume_scan
    return payload


@router.get("/access")
def check_access(
    tier: str = Query(..., description="Required plan tier"),
    user_id: str = Depends(get_current_user_id),
):
    required = parse_required_plan(tier)
    return require_tier(user_id, required).to_payload()


@router.post("/scans/consume")
def consume(user_id: str = Depends(get_current_user_id)):
    decision = consume_scan(user_id)
    if not decision.allowed:
        raise refuse(decision)
    entitlement = decision.entitlement
    return {
        "allowed": True,
        "scans_used": entitlement.scans_used,
        "scans_remaining": entitlement.scans_remaining,
        "scans_reset_at": entitlement.scans_reset_at.isoformat(),
    }
