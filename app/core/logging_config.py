from __future__ import annotations

import json
import logging
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any

correlation_id_ctx_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)

_RESERVED_RECORD_KEYS = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "taskName",
}

_LEDGER_FIELDS = ("coupon_code", "outcome", "registration_id", "discount")


class CorrelationIdFilter(logging.Filter):
    """Attach the caller's correlation id to every log record."""

    def filter(self, record: logging.LogRecord) -> bool:  # pragma: no cover - trivial
        record.correlation_id = correlation_id_ctx_var.get() or "-"
        return True


def _json_safe(value: Any) -> Any:
    if value is None or isinstance(value, (int, float, bool, str)):
        return value
    if isinstance(value, dict):
        return {str(key): _json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_json_safe(item) for item in value]
    return str(value)


def _record_payload(record: logging.LogRecord) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
        "level": record.levelname,
        "logger": record.name,
        "message": record.getMessage(),
        "correlation_id": getattr(record, "correlation_id", "-"),
    }
    for field in _LEDGER_FIELDS:
        value = getattr(record, field, None)
        if value is not None:
            payload[field] = _json_safe(value)
    for key, value in record.__dict__.items():
        if key in _RESERVED_RECORD_KEYS or key in payload or key.startswith("_"):
            continue
        payload[key] = _json_safe(value)
    return payload


class JsonFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        payload = _record_payload(record)
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def configure_logging(json_logs: bool = False, level: str = "INFO") -> None:
    """Configure the root logger with a correlation-id aware formatter."""
    handler = logging.StreamHandler()
    handler.addFilter(CorrelationIdFilter())
    if json_logs:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s [%(correlation_id)s] %(message)s")
        )

    log_level = getattr(logging, str(level or "INFO").strip().upper(), logging.INFO)
    logging.basicConfig(level=log_level, handlers=[handler], force=True)
