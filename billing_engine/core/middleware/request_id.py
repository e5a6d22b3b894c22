import logging
import time
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from billing_engine.core.logging import latency_bucket_ms, request_id_ctx_var

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "x-request-id"


class RequestIdMiddleware(BaseHTTPMiddleware):
    """
    Correlate logs for one request.

    Reuses an incoming x-request-id (so a webhook redelivery can be traced
    through the provider's own id) or mints one, exposes it on
    request.state and the logging context, and echoes it on the response.
    """

    def __init__(self, app, header_name: str = REQUEST_ID_HEADER):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request: Request, call_next):
        rid = request.headers.get(self.header_name) or uuid4().hex
        request.state.request_id = rid
        token = request_id_ctx_var.set(rid)
        started = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            request_id_ctx_var.reset(token)

        response.headers[self.header_name] = rid
        logger.info(
            "request.complete %s %s -> %s (%s)",
            request.method,
            request.url.path,
            response.status_code,
            latency_bucket_ms((time.perf_counter() - started) * 1000),
            extra={"request_id": rid, "status": response.status_code},
        )
        return response
