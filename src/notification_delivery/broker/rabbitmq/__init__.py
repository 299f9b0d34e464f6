"""RabbitMQ transport adapter (aio-pika)."""

from __future__ import annotations

from .broker import RabbitMQBroker, delay_bucket, delay_queue_name
from .connection import RabbitMQConnectionManager

__all__ = [
    "RabbitMQBroker",
    "RabbitMQConnectionManager",
    "delay_bucket",
    "delay_queue_name",
]
