"""Error normalization and handlers."""

import logging
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.responses import JSONResponse
from starlette.requests import Request

from billing_engine.core.logging import get_request_id

logger = logging.getLogger(__name__)


class AppError(Exception):
    code = "app_error"
    status_code = 500
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
        request_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.details = details
        self.request_id = request_id


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, ValueError):
    code = "not_found"
    status_code = 404


class GateRefusedError(AppError):
    """Raised by gating dependencies; details carry the upgrade prompt."""
    code = "upgrade_required"
    status_code = 403


class StoreUnavailableError(AppError):
    """The entitlement store could not be read or written. Safe to retry."""
    code = "store_unavailable"
    status_code = 503
    retryable = True


class UnknownPriceError(AppError, ValueError):
    code = "unknown_price"
    status_code = 422


class AdminAuditWriteError(AppError):
    """Audit rows are mandatory; the audited change is rolled back with them."""
    code = "admin_audit_failed"
    status_code = 500


def _request_id_for(request: Request) -> str:
    return getattr(request.state, "request_id", None) or get_request_id() or uuid4().hex


def _json_error(
    status_code: int,
    code: str,
    message: Any,
    request_id: str,
    details: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    error = {"code": code, "message": message, "request_id": request_id}
    if details:
        error["details"] = details
    response = JSONResponse(status_code=status_code, content={"error": error, "detail": message})
    response.headers["x-request-id"] = request_id
    for name, value in (headers or {}).items():
        response.headers[name] = value
    return response


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _request_id_for(request)
    logger.log(
        logging.ERROR if exc.status_code >= 500 else logging.WARNING,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    headers = {"retry-after": "1"} if exc.retryable else None
    return _json_error(exc.status_code, exc.code, exc.message, rid, exc.details, headers)


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _request_id_for(request)
    detail = exc.detail or "HTTP error"
    # Dependencies that raise HTTPException pass {"error", "code"} dicts.
    if isinstance(detail, dict) and detail.get("code"):
        code = detail["code"]
    else:
        code = "not_found" if exc.status_code == 404 else "http_error"
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    return _json_error(exc.status_code, code, detail, rid)


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _request_id_for(request)
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    return _json_error(500, "internal_error", "Unexpected error", rid)
