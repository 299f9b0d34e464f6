"""Health registry and queue status reporting."""

from __future__ import annotations

import asyncio
import datetime
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from .exceptions import MessagingError

if TYPE_CHECKING:
    from collections.abc import Callable

    from .broker.base import IBroker, QueueDepth

logger = logging.getLogger("notification_delivery.health")


class HealthRegistry:
    """Registry for health checks and worker heartbeats."""

    def __init__(self, heartbeat_timeout_seconds: int = 60) -> None:
        self._checks: dict[str, Callable[[], Any]] = {}
        self._heartbeats: dict[str, datetime.datetime] = {}
        self._heartbeat_timeout = heartbeat_timeout_seconds

    def register(self, name: str, check: Callable[[], Any]) -> None:
        """Register a health check."""
        self._checks[name] = check

    def heartbeat(self, worker_name: str) -> None:
        """Record worker heartbeat time."""
        self._heartbeats[worker_name] = datetime.datetime.now(datetime.timezone.utc)

    def forget(self, worker_name: str) -> None:
        self._heartbeats.pop(worker_name, None)

    def _check_heartbeats(self) -> dict[str, str]:
        now = datetime.datetime.now(datetime.timezone.utc)
        results: dict[str, str] = {}
        for worker_name, last_heartbeat in self._heartbeats.items():
            age = (now - last_heartbeat).total_seconds()
            results[worker_name] = "up" if age < self._heartbeat_timeout else "down"
        return results

    async def check_all(self) -> dict[str, str]:
        """Run all checks and return status map."""
        result: dict[str, str] = {}
        for name, check in self._checks.items():
            try:
                value = check()
                if asyncio.iscoroutine(value):
                    value = await value
                result[name] = "up" if value else "down"
            except Exception:  # noqa: BLE001
                logger.debug("Health check %s raised", name, exc_info=True)
                result[name] = "down"

        result.update(self._check_heartbeats())
        return result

    async def status(self) -> dict[str, Any]:
        """Return full health status report."""
        components = await self.check_all()
        healthy = all(v == "up" for v in components.values())
        return {
            "status": "healthy" if healthy else "unhealthy",
            "components": components,
            "timestamp": datetime.datetime.now(datetime.timezone.utc).isoformat(),
        }


def _depth_dict(name: str, depth: QueueDepth | None) -> dict[str, Any]:
    return {
        "name": name,
        "messageCount": depth.message_count if depth else 0,
        "consumerCount": depth.consumer_count if depth else 0,
    }


@dataclass(frozen=True)
class QueueStatus:
    """Broker connectivity plus depth of the main queue and the DLQ.

    Depths are None when the broker could not be queried.
    """

    connected: bool
    main_name: str
    dlq_name: str
    main: QueueDepth | None = None
    dlq: QueueDepth | None = None

    @property
    def status(self) -> str:
        return "healthy" if self.connected else "degraded"

    def as_dict(self) -> dict[str, Any]:
        return {
            "rabbitmq": "connected" if self.connected else "disconnected",
            "queues": {
                "main": _depth_dict(self.main_name, self.main),
                "dlq": _depth_dict(self.dlq_name, self.dlq),
            },
        }


class QueueStatusReporter:
    """Answers health/status queries for the main queue and the DLQ."""

    def __init__(
        self,
        broker: IBroker,
        *,
        queue_name: str = "notification_queue",
        dlq_name: str = "notification_dlq",
    ) -> None:
        self._broker = broker
        self.queue_name = queue_name
        self.dlq_name = dlq_name

    async def depth(self, name: str) -> QueueDepth:
        """Raises MessagingError when the broker cannot be queried."""
        return await self._broker.queue_depth(name)

    async def status(self) -> QueueStatus:
        connected = await self._broker.health_check()
        main = dlq = None
        if connected:
            try:
                main = await self._broker.queue_depth(self.queue_name)
                dlq = await self._broker.queue_depth(self.dlq_name)
            except MessagingError as e:
                logger.warning("Failed to get queue info: %s", e)
        return QueueStatus(
            connected=connected,
            main_name=self.queue_name,
            dlq_name=self.dlq_name,
            main=main,
            dlq=dlq,
        )
