"""IBroker: port for the durable queue broker the core depends on."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import AsyncIterator


@dataclass
class Delivery:
    """One broker delivery of a message, pending ack or nack.

    ``raw`` holds the transport object the adapter needs to settle it.
    """

    body: bytes
    headers: dict[str, Any]
    queue: str
    message_id: str | None = None
    delivery_tag: int | None = None
    redelivered: bool = False
    raw: Any = field(default=None, repr=False)


@dataclass(frozen=True)
class QueueDepth:
    """Point-in-time counters for a queue."""

    name: str
    message_count: int = 0
    consumer_count: int = 0


@runtime_checkable
class IBroker(Protocol):
    """
    Port for an AMQP-style broker with manual acknowledgement.

    One broker object wraps one channel; it is not safe to share between
    concurrent workers. Infrastructure packages provide concrete adapters.
    """

    async def declare_queue(self, name: str, durable: bool = True) -> None:
        """Ensure *name* exists."""
        ...

    async def publish(
        self,
        queue: str,
        body: bytes,
        headers: dict[str, Any],
        *,
        message_id: str | None = None,
        delay: float | None = None,
    ) -> None:
        """
        Publish *body* persistently to *queue*.

        Args:
            queue: Destination queue name.
            body: Encoded envelope.
            headers: Transport headers.
            message_id: Optional broker-level message id property.
            delay: Seconds to hold the message before it becomes visible.
        """
        ...

    def consume(self, queue: str) -> AsyncIterator[Delivery]:
        """Yield deliveries from *queue* one at a time until cancelled."""
        ...

    async def ack(self, delivery: Delivery) -> None:
        """Acknowledge (consume) a delivery."""
        ...

    async def nack(self, delivery: Delivery, requeue: bool = True) -> None:
        """Reject a delivery, optionally returning it to the queue."""
        ...

    async def queue_depth(self, name: str) -> QueueDepth:
        """Return message and consumer counts for *name*."""
        ...

    async def health_check(self) -> bool:
        """Return True if the underlying channel is usable."""
        ...

    async def close(self) -> None:
        """Release the channel; unsettled deliveries return to the queue."""
        ...
