"""FastAPI application for publishing and queue inspection."""

from __future__ import annotations

from .app import create_app, create_app_from_settings
from .middleware import CorrelationIdMiddleware

__all__ = ["CorrelationIdMiddleware", "create_app", "create_app_from_settings"]
