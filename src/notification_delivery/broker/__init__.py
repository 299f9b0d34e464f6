"""Broker port and adapters."""

from __future__ import annotations

from .base import Delivery, IBroker, QueueDepth
from .memory import InMemoryBroker, PublishedMessage

__all__ = [
    "Delivery",
    "IBroker",
    "InMemoryBroker",
    "PublishedMessage",
    "QueueDepth",
]
