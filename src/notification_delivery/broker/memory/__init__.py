"""In-memory broker adapter for testing."""

from __future__ import annotations

from .broker import InMemoryBroker, PublishedMessage

__all__ = [
    "InMemoryBroker",
    "PublishedMessage",
]
