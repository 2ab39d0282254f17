from __future__ import annotations

import json
import logging
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any

request_id_ctx_var: ContextVar[str | None] = ContextVar("request_id", default=None)

_RESERVED_RECORD_KEYS = frozenset(
    {
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
)

# Fields promoted to the top of each JSON line so log search can key on them.
_CONTEXT_FIELDS = ("path", "method", "status_code", "duration_ms", "asset_id", "page", "job_id", "batch_id")

_MAX_TEXT = 4000
_MAX_ITEMS = 100


class RequestIdFilter(logging.Filter):
    """Attach request_id from contextvars to every log record."""

    def filter(self, record: logging.LogRecord) -> bool:  # pragma: no cover - trivial
        record.request_id = request_id_ctx_var.get() or "-"
        return True


def _json_safe(value: Any) -> Any:
    if value is None or isinstance(value, (int, float, bool)):
        return value
    if isinstance(value, str):
        return value[:_MAX_TEXT]
    if isinstance(value, dict):
        out: dict[str, Any] = {}
        for idx, (key, item) in enumerate(value.items()):
            if idx >= _MAX_ITEMS:
                out["..."] = "truncated"
                break
            out[str(key)] = _json_safe(item)
        return out
    if isinstance(value, (list, tuple, set)):
        return [_json_safe(item) for item in list(value)[:_MAX_ITEMS]]
    try:
        return str(value)[:_MAX_TEXT]
    except Exception:  # pragma: no cover
        return "<unserializable>"


def _record_payload(record: logging.LogRecord) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
        "level": record.levelname,
        "logger": record.name,
        "message": record.getMessage(),
        "request_id": getattr(record, "request_id", "-"),
    }
    for field in _CONTEXT_FIELDS:
        value = getattr(record, field, None)
        if value is not None:
            payload[field] = _json_safe(value)
    for key, value in (getattr(record, "__dict__", {}) or {}).items():
        if key in _RESERVED_RECORD_KEYS or key in payload or key.startswith("_"):
            continue
        payload[key] = _json_safe(value)
    return payload


class JsonFormatter(logging.Formatter):
    """One JSON object per line, including any `extra=` fields."""

    def format(self, record: logging.LogRecord) -> str:  # pragma: no cover - simple serialization
        payload = _record_payload(record)
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def configure_logging(json_logs: bool = False, level: int = logging.INFO) -> None:
    """Configure root logger with request-id aware formatter."""
    handler = logging.StreamHandler()
    handler.addFilter(RequestIdFilter())
    if json_logs:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s [%(request_id)s] %(message)s")
        )

    logging.basicConfig(level=level, handlers=[handler], force=True)
