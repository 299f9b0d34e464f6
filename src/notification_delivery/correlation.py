"""Correlation ID management: ties publish requests to deliveries in logs."""

from __future__ import annotations

import uuid
from contextvars import ContextVar

HEADER_CORRELATION_ID = "correlationId"

# ContextVar for correlation tracking across async boundaries.
_correlation_id: ContextVar[str | None] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> str | None:
    """Get current correlation ID from context."""
    return _correlation_id.get()


def set_correlation_id(correlation_id: str | None) -> None:
    """Set correlation ID in context."""
    _correlation_id.set(correlation_id)


def generate_correlation_id() -> str:
    """Generate a new correlation ID."""
    return str(uuid.uuid4())
