"""
Logging for the billing engine.

All loggers live under the `billing_engine` hierarchy. Records carry the
request id of the HTTP request that produced them (via a context variable),
plus any billing context passed through `extra=`: user, event, plan, status,
outcome. Production renders one JSON object per line; development renders a
single readable line.
"""

import json
import logging
import os
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Dict, Optional

ROOT_LOGGER = "billing_engine"

request_id_ctx_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Copied from `extra=` into JSON output when set.
CONTEXT_FIELDS = (
    "request_id",
    "user_id",
    "event_id",
    "event_type",
    "error_code",
    "plan",
    "status",
    "outcome",
)

_LATENCY_BUCKETS = ((10, "<10ms"), (100, "10-100ms"), (500, "100-500ms"), (1000, "500-1000ms"))

_MAX_VALUE_CHARS = 500


def get_request_id(default: Optional[str] = None) -> Optional[str]:
    rid = request_id_ctx_var.get()
    return default if rid is None else rid


def latency_bucket_ms(latency_ms: Optional[float]) -> str:
    """Coarse latency label, stable enough to aggregate on."""
    if latency_ms is None:
        return "unknown"
    for upper, label in _LATENCY_BUCKETS:
        if latency_ms < upper:
            return label
    return ">=1000ms"


def _iso_utc(record: logging.LogRecord) -> str:
    stamp = datetime.fromtimestamp(record.created, timezone.utc)
    return stamp.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class RequestIdFilter(logging.Filter):
    """Stamp the current request id onto records that don't already carry one."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = get_request_id()
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": _iso_utc(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(
            (name, getattr(record, name))
            for name in CONTEXT_FIELDS
            if getattr(record, name, None) is not None
        )
        if record.exc_info:
            entry["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class PrettyFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        rid = getattr(record, "request_id", None)
        context = " ".join(
            f"{name}={getattr(record, name)}"
            for name in CONTEXT_FIELDS[1:]
            if getattr(record, name, None) is not None
        )
        parts = [_iso_utc(record), record.levelname, f"[{record.name}]"]
        if rid:
            parts.append(f"[rid={rid}]")
        parts.append(record.getMessage())
        if context:
            parts.append(f"({context})")
        text = " ".join(parts)
        if record.exc_info:
            text += "\n" + self.formatException(record.exc_info)
        return text


def configure_logging(env: str = "development") -> None:
    """Install a single stdout handler on the billing_engine logger."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if env.lower() == "production" else PrettyFormatter())
    handler.addFilter(RequestIdFilter())

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(logging.INFO)
    logger.handlers = [handler]
    # Propagate so test capture (caplog) still sees records.
    logger.propagate = True

    for name in ("uvicorn", "uvicorn.error"):
        logging.getLogger(name).propagate = False


def _truncate(value, limit: int = _MAX_VALUE_CHARS) -> str:
    try:
        text = str(value)
    except Exception:
        return "<unserializable>"
    return text if len(text) <= limit else text[:limit] + "...<truncated>"


def log_event(
    level: str,
    msg: str,
    *,
    request_id: Optional[str] = None,
    user_id: Optional[str] = None,
    event_id: Optional[str] = None,
    event_type: Optional[str] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, object]] = None,
    exc_info: bool = False,
):
    """
    Log with billing context attached.

    Free-form `extra` values are stringified and truncated so a whole
    provider payload or exception chain can't flood the log line.
    """
    logger = logging.getLogger(ROOT_LOGGER)
    if not logger.handlers:
        configure_logging(os.getenv("ENV", "development"))

    context: Dict[str, object] = {"request_id": request_id or get_request_id()}
    for name, value in (
        ("user_id", user_id),
        ("event_id", event_id),
        ("event_type", event_type),
        ("error_code", error_code),
    ):
        if value:
            context[name] = value
    for key, value in (extra or {}).items():
        context[key] = _truncate(value)

    getattr(logger, level, logger.info)(msg, extra=context, exc_info=exc_info)
