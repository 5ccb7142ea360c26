"""
Provisioning Plane Logging
==========================

Every log line about an order carries the order id, provider, batch id
and attempt number when the caller passed them as `extra`. JSON lines
are meant for production, the text format for a terminal.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional, TextIO

CONTEXT_FIELDS = ("order_id", "provider", "batch_id", "attempt")

# Short labels used by the text format
TEXT_LABELS = {"order_id": "order", "provider": "provider", "batch_id": "batch", "attempt": "attempt"}

NOISY_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "asyncpg")


def order_context(record: logging.LogRecord) -> Dict[str, Any]:
    """Context fields set on the record, in a fixed order."""
    return {
        key: getattr(record, key)
        for key in CONTEXT_FIELDS
        if getattr(record, key, None) is not None
    }


class JSONFormatter(logging.Formatter):
    """One JSON object per record, stamped with the record's own time."""

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, timezone.utc)
        entry: Dict[str, Any] = {
            "timestamp": created.isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(order_context(record))
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = self.formatException(record.exc_info)
            entry["error_type"] = type(record.exc_info[1]).__name__
        return json.dumps(entry, default=str)


class OrderContextFormatter(logging.Formatter):
    """Plain text with a trailing [order=... provider=...] block."""

    def __init__(self):
        super().__init__("%(asctime)s %(levelname)-8s %(name)s: %(message)s", datefmt="%Y-%m-%d %H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        text = super().format(record)
        context = order_context(record)
        if not context:
            return text
        tags = " ".join(f"{TEXT_LABELS[k]}={v}" for k, v in context.items())
        first, sep, rest = text.partition("\n")
        return f"{first} [{tags}]{sep}{rest}"


def configure_logging(level: str = "INFO", fmt: str = "json",
                      stream: Optional[TextIO] = None) -> logging.Handler:
    """
    Install a single root handler.

    Args:
        level: Log level name; unknown names fall back to INFO
        fmt: "json" for JSON lines, anything else for text
        stream: Defaults to stdout

    Returns:
        The installed handler
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(JSONFormatter() if fmt == "json" else OrderContextFormatter())
    root.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    return handler
