"""InMemoryBroker: IBroker with assertion helpers for tests."""

from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from ...exceptions import MessagingError, PublishError
from ..base import Delivery, IBroker, QueueDepth

if TYPE_CHECKING:
    from collections.abc import AsyncIterator


@dataclass(frozen=True)
class PublishedMessage:
    """Record of a publish call for test assertions."""

    queue: str
    body: bytes
    headers: dict[str, Any]
    message_id: str | None = None
    delay: float | None = None


@dataclass
class _QueueState:
    durable: bool = True
    pending: asyncio.Queue[Delivery] = field(default_factory=asyncio.Queue)
    consumers: int = 0


class InMemoryBroker(IBroker):
    """In-process broker that buffers messages per queue.

    Delays are recorded but not honored: a delayed publish is visible at
    once. Unacked deliveries are tracked so tests can assert settlement, and
    publishes to queues listed in ``fail_publish_to`` raise PublishError.
    """

    def __init__(self) -> None:
        self._queues: dict[str, _QueueState] = {}
        self._tags = itertools.count(1)
        self._unacked: dict[int, Delivery] = {}
        self.published: list[PublishedMessage] = []
        self.acked: list[Delivery] = []
        self.nacked: list[tuple[Delivery, bool]] = []
        self.fail_publish_to: set[str] = set()
        self.declared: set[str] = set()
        self.connected = True
        self.closed = False

    def _state(self, name: str) -> _QueueState:
        return self._queues.setdefault(name, _QueueState())

    async def declare_queue(self, name: str, durable: bool = True) -> None:
        self._state(name).durable = durable
        self.declared.add(name)

    async def publish(
        self,
        queue: str,
        body: bytes,
        headers: dict[str, Any],
        *,
        message_id: str | None = None,
        delay: float | None = None,
    ) -> None:
        if not self.connected:
            raise PublishError("broker channel not available", queue=queue)
        if queue in self.fail_publish_to:
            raise PublishError(f"publish to {queue} rejected", queue=queue)
        self.published.append(
            PublishedMessage(queue, body, dict(headers), message_id, delay)
        )
        self._enqueue(
            Delivery(
                body=body,
                headers=dict(headers),
                queue=queue,
                message_id=message_id,
            )
        )

    def _enqueue(self, delivery: Delivery) -> None:
        delivery.delivery_tag = next(self._tags)
        self._state(delivery.queue).pending.put_nowait(delivery)

    def _take(self, delivery: Delivery) -> Delivery:
        assert delivery.delivery_tag is not None
        self._unacked[delivery.delivery_tag] = delivery
        return delivery

    def get(self, queue: str) -> Delivery | None:
        """Pop the next delivery without waiting (None when empty)."""
        try:
            return self._take(self._state(queue).pending.get_nowait())
        except asyncio.QueueEmpty:
            return None

    async def consume(self, queue: str) -> AsyncIterator[Delivery]:
        state = self._state(queue)
        state.consumers += 1
        try:
            while True:
                yield self._take(await state.pending.get())
        finally:
            state.consumers -= 1

    def _settle(self, delivery: Delivery) -> None:
        if delivery.delivery_tag not in self._unacked:
            raise MessagingError(f"unknown delivery tag {delivery.delivery_tag}")
        del self._unacked[delivery.delivery_tag]

    async def ack(self, delivery: Delivery) -> None:
        self._settle(delivery)
        self.acked.append(delivery)

    async def nack(self, delivery: Delivery, requeue: bool = True) -> None:
        self._settle(delivery)
        self.nacked.append((delivery, requeue))
        if requeue:
            delivery.redelivered = True
            self._enqueue(delivery)

    async def queue_depth(self, name: str) -> QueueDepth:
        if not self.connected:
            raise MessagingError("broker channel not available")
        state = self._state(name)
        return QueueDepth(
            name=name,
            message_count=state.pending.qsize(),
            consumer_count=state.consumers,
        )

    async def health_check(self) -> bool:
        return self.connected

    async def close(self) -> None:
        self.closed = True

    def messages_in(self, queue: str) -> list[PublishedMessage]:
        """Return every message published to *queue*, in order."""
        return [m for m in self.published if m.queue == queue]

    @property
    def unacked(self) -> list[Delivery]:
        return list(self._unacked.values())
