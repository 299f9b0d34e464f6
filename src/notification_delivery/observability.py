"""Logging setup, structured event entries, and Prometheus metrics."""

from __future__ import annotations

import json
import logging
from typing import Any

from prometheus_client import Counter, Histogram

from .correlation import get_correlation_id

_log = logging.getLogger(__name__)

MESSAGES_TOTAL = Counter(
    "notification_messages_total",
    "Consumed notification messages by terminal outcome",
    ["outcome"],
)
PUBLISHED_TOTAL = Counter(
    "notification_published_total",
    "Notification messages accepted by the broker",
    ["queue"],
)
SEND_DURATION = Histogram(
    "notification_send_duration_seconds",
    "Downstream sender call duration",
    ["outcome"],
)

_TEXT_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


class JsonFormatter(logging.Formatter):
    """Render records as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def configure_logging(level: str = "INFO", *, json_output: bool = False) -> None:
    """Install a single root handler; safe to call more than once."""
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter() if json_output else logging.Formatter(_TEXT_FORMAT))
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level.upper())


def log_event(
    logger: logging.Logger,
    event: str,
    *,
    level: int = logging.INFO,
    **fields: Any,
) -> None:
    """Emit a lifecycle event as a JSON entry with correlation context."""
    entry: dict[str, Any] = {"event": event, **fields}
    correlation_id = get_correlation_id()
    if correlation_id and "correlation_id" not in entry:
        entry["correlation_id"] = correlation_id
    try:
        logger.log(level, json.dumps(entry, default=str))
    except Exception:  # noqa: BLE001
        _log.debug("Failed to emit structured log entry", exc_info=True)
