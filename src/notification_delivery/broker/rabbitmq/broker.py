"""RabbitMQBroker: IBroker over one aio-pika channel with publisher confirms."""

from __future__ import annotations

import asyncio
import math
import logging
from typing import TYPE_CHECKING, Any

import aio_pika
from aio_pika.exceptions import AMQPError, ChannelInvalidStateError

from ...exceptions import MessagingConnectionError, MessagingError, PublishError
from ..base import Delivery, IBroker, QueueDepth

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from aio_pika.abc import AbstractChannel, AbstractIncomingMessage, AbstractQueue

    from .connection import RabbitMQConnectionManager

logger = logging.getLogger("notification_delivery.broker.rabbitmq")

_BROKER_ERRORS = (
    AMQPError,
    ChannelInvalidStateError,
    ConnectionError,
    OSError,
    asyncio.TimeoutError,
)


def delay_bucket(delay: float) -> int:
    """Whole seconds a delayed message waits, rounded up."""
    return max(1, math.ceil(delay))


def delay_queue_name(queue: str, delay: float) -> str:
    return f"{queue}.delay.{delay_bucket(delay)}s"


class RabbitMQBroker(IBroker):
    """RabbitMQ adapter implementing IBroker.

    Publishes through the default exchange (routing key = queue name) with
    persistent delivery mode. Delayed messages go to ``<queue>.delay.<n>s``,
    a consumer-less queue with a queue-level TTL of ``n`` seconds whose
    expired messages dead-letter back to ``<queue>``. RabbitMQ only expires
    messages at the head of a queue, so every message in one delay queue
    shares the same TTL; delays are rounded up to whole seconds to keep the
    number of delay queues bounded by ``max_delay``.
    """

    def __init__(
        self,
        connection: RabbitMQConnectionManager,
        *,
        prefetch_count: int = 1,
        publish_timeout: float | None = 10.0,
    ) -> None:
        """Configure broker.

        Args:
            connection: Shared connection manager; this broker opens its own
                channel on it.
            prefetch_count: QoS prefetch applied to the channel.
            publish_timeout: Seconds to wait for a publisher confirm.
        """
        self._connection = connection
        self._prefetch_count = prefetch_count
        self._publish_timeout = publish_timeout
        self._channel: AbstractChannel | None = None
        self._channel_lock = asyncio.Lock()
        self._queues: dict[str, AbstractQueue] = {}

    async def _ensure_channel(self) -> AbstractChannel:
        # Concurrent requests share one channel; only the first opens it.
        async with self._channel_lock:
            if self._channel is None or self._channel.is_closed:
                self._channel = await self._connection.open_channel(
                    prefetch_count=self._prefetch_count
                )
                self._queues.clear()
            return self._channel

    async def _queue(
        self,
        name: str,
        durable: bool = True,
        arguments: dict[str, Any] | None = None,
    ) -> AbstractQueue:
        queue = self._queues.get(name)
        if queue is None:
            channel = await self._ensure_channel()
            queue = await channel.declare_queue(
                name, durable=durable, arguments=arguments
            )
            self._queues[name] = queue
        return queue

    async def declare_queue(self, name: str, durable: bool = True) -> None:
        try:
            await self._queue(name, durable=durable)
        except _BROKER_ERRORS as e:
            raise MessagingError(f"Failed to declare queue {name}: {e}") from e

    async def _declare_delay_queue(self, queue: str, delay: float) -> str:
        name = delay_queue_name(queue, delay)
        await self._queue(
            name,
            arguments={
                "x-message-ttl": delay_bucket(delay) * 1000,
                "x-dead-letter-exchange": "",
                "x-dead-letter-routing-key": queue,
            },
        )
        return name

    async def publish(
        self,
        queue: str,
        body: bytes,
        headers: dict[str, Any],
        *,
        message_id: str | None = None,
        delay: float | None = None,
    ) -> None:
        try:
            channel = await self._ensure_channel()
            target = queue
            if delay is not None and delay > 0:
                target = await self._declare_delay_queue(queue, delay)
            await channel.default_exchange.publish(
                aio_pika.Message(
                    body=body,
                    content_type="application/json",
                    delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
                    message_id=message_id,
                    headers=headers,
                ),
                routing_key=target,
                timeout=self._publish_timeout,
            )
        except (MessagingConnectionError, *_BROKER_ERRORS) as e:
            raise PublishError(f"Failed to publish to {queue}: {e}", queue=queue) from e

    def _to_delivery(self, queue: str, message: AbstractIncomingMessage) -> Delivery:
        return Delivery(
            body=message.body,
            headers=dict(message.headers or {}),
            queue=queue,
            message_id=message.message_id,
            delivery_tag=message.delivery_tag,
            redelivered=bool(message.redelivered),
            raw=message,
        )

    async def consume(self, queue: str) -> AsyncIterator[Delivery]:
        """Pull messages through a queue iterator; prefetch bounds the buffer."""
        try:
            amqp_queue = await self._queue(queue)
            async with amqp_queue.iterator() as messages:
                async for message in messages:
                    yield self._to_delivery(queue, message)
        except _BROKER_ERRORS as e:
            raise MessagingError(f"Consumer on {queue} failed: {e}") from e

    async def ack(self, delivery: Delivery) -> None:
        try:
            await delivery.raw.ack()
        except _BROKER_ERRORS as e:
            raise MessagingError(f"Failed to ack delivery: {e}") from e

    async def nack(self, delivery: Delivery, requeue: bool = True) -> None:
        try:
            await delivery.raw.nack(requeue=requeue)
        except _BROKER_ERRORS as e:
            raise MessagingError(f"Failed to nack delivery: {e}") from e

    async def queue_depth(self, name: str) -> QueueDepth:
        try:
            channel = await self._ensure_channel()
            queue = await channel.declare_queue(name, passive=True)
        except _BROKER_ERRORS as e:
            raise MessagingError(f"Failed to inspect queue {name}: {e}") from e
        result = queue.declaration_result
        return QueueDepth(
            name=name,
            message_count=result.message_count or 0,
            consumer_count=result.consumer_count or 0,
        )

    async def health_check(self) -> bool:
        if not await self._connection.health_check():
            return False
        return self._channel is None or not self._channel.is_closed

    async def close(self) -> None:
        if self._channel is not None and not self._channel.is_closed:
            await self._channel.close()
        self._channel = None
        self._queues.clear()
