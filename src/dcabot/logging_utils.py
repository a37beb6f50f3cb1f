from __future__ import annotations

import json
import logging
import os
from datetime import UTC, datetime
from typing import Any

from dcabot.logging_context import CORRELATION_FIELDS, get_logging_context

# Libraries that log every request at INFO.
_CHATTY_LOGGERS = ("httpx", "httpcore")


class CorrelationFilter(logging.Filter):
    """Stamp the active correlation ids on the record when it is emitted."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation = get_logging_context()
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        correlation = getattr(record, "correlation", None)
        if not isinstance(correlation, dict):
            correlation = get_logging_context()
        for field in CORRELATION_FIELDS:
            payload[field] = correlation.get(field)

        extras = getattr(record, "extra", None)
        if isinstance(extras, dict):
            payload.update(extras)

        if record.exc_info:
            exc_type, exc_value, _ = record.exc_info
            payload["error_type"] = exc_type.__name__ if exc_type else "Exception"
            payload["error_message"] = "" if exc_value is None else str(exc_value)
            payload["traceback"] = self.formatException(record.exc_info)
        elif record.exc_text:
            payload["traceback"] = record.exc_text

        return json.dumps(payload, default=str)


def _resolve_log_level(level: str | int | None) -> int:
    if isinstance(level, int):
        return level
    name = str(level if level is not None else os.getenv("LOG_LEVEL", "INFO")).strip().upper()
    resolved = logging.getLevelName(name)
    return resolved if isinstance(resolved, int) else logging.INFO


def setup_logging(level: str | int | None = None) -> None:
    """Route every logger to one JSON stream handler on stderr."""
    handler = logging.StreamHandler()
    handler.addFilter(CorrelationFilter())
    handler.setFormatter(JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    resolved_level = _resolve_log_level(level)
    root.setLevel(resolved_level)

    chatty_level = logging.DEBUG if resolved_level <= logging.DEBUG else logging.WARNING
    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(chatty_level)
