"""
Liveness and readiness probes.

No secrets or stack traces are returned.
"""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import inspect

from billing_engine.core.database import check_connection, get_engine

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])

REQUIRED_TABLES = (
    "subscriptions",
    "app_users",
    "billing_events",
    "billing_admin_audit",
)


@router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@router.get("/readyz")
def readyz():
    """Readiness check: DB connectivity + required tables."""
    if not check_connection():
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})

    inspector = inspect(get_engine())
    missing = [t for t in REQUIRED_TABLES if not inspector.has_table(t)]
    if missing:
        detail = f"missing tables: {', '.join(missing)}"
        logger.warning("[readyz] %s", detail)
        return JSONResponse(status_code=503, content={"status": "error", "detail": detail})

    return {"status": "ok"}
