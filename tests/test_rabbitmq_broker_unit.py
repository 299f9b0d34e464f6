"""Unit tests for RabbitMQBroker and RabbitMQConnectionManager with mocked aio-pika."""

from __future__ import annotations

import asyncio
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import aio_pika
import pytest
from aio_pika.exceptions import AMQPConnectionError

from notification_delivery.broker.base import Delivery
from notification_delivery.broker.rabbitmq import (
    RabbitMQBroker,
    RabbitMQConnectionManager,
    delay_bucket,
    delay_queue_name,
)
from notification_delivery.exceptions import (
    MessagingConnectionError,
    MessagingError,
    PublishError,
)


class _FakeQueueIterator:
    def __init__(self, messages: list[Any]) -> None:
        self._messages = list(messages)

    async def __aenter__(self) -> _FakeQueueIterator:
        return self

    async def __aexit__(self, *exc: object) -> None:
        return None

    def __aiter__(self) -> _FakeQueueIterator:
        return self

    async def __anext__(self) -> Any:
        if not self._messages:
            raise StopAsyncIteration
        return self._messages.pop(0)


def _incoming(body: bytes = b"{}", headers: dict[str, Any] | None = None) -> MagicMock:
    message = MagicMock()
    message.body = body
    message.headers = headers or {}
    message.message_id = "m1"
    message.delivery_tag = 7
    message.redelivered = False
    message.ack = AsyncMock()
    message.nack = AsyncMock()
    return message


@pytest.fixture
def channel() -> MagicMock:
    channel = MagicMock()
    channel.is_closed = False
    channel.close = AsyncMock()
    channel.default_exchange.publish = AsyncMock()
    queue = MagicMock()
    queue.declaration_result.message_count = 4
    queue.declaration_result.consumer_count = 2
    channel.declare_queue = AsyncMock(return_value=queue)
    return channel


@pytest.fixture
def connection(channel: MagicMock) -> MagicMock:
    conn = MagicMock()
    conn.open_channel = AsyncMock(return_value=channel)
    conn.health_check = AsyncMock(return_value=True)
    return conn


@pytest.fixture
def broker(connection: MagicMock) -> RabbitMQBroker:
    return RabbitMQBroker(connection, prefetch_count=3, publish_timeout=5.0)


@pytest.mark.asyncio
async def test_publish_persistent_message_via_default_exchange(
    broker: RabbitMQBroker, connection: MagicMock, channel: MagicMock
) -> None:
    await broker.publish("notification_queue", b'{"a":1}', {"retryCount": 0}, message_id="m1")

    connection.open_channel.assert_awaited_once_with(prefetch_count=3)
    call = channel.default_exchange.publish.await_args
    message = call.args[0]
    assert call.kwargs["routing_key"] == "notification_queue"
    assert call.kwargs["timeout"] == 5.0
    assert message.body == b'{"a":1}'
    assert message.delivery_mode == aio_pika.DeliveryMode.PERSISTENT
    assert message.message_id == "m1"
    assert message.headers == {"retryCount": 0}
    assert message.content_type == "application/json"
    assert message.expiration is None


@pytest.mark.asyncio
async def test_delayed_publish_goes_through_delay_queue(
    broker: RabbitMQBroker, channel: MagicMock
) -> None:
    await broker.publish("notification_queue", b"{}", {}, delay=2.5)

    delay_queue = delay_queue_name("notification_queue", 2.5)
    assert delay_queue == "notification_queue.delay.3s"
    channel.declare_queue.assert_awaited_once_with(
        delay_queue,
        durable=True,
        arguments={
            "x-message-ttl": 3000,
            "x-dead-letter-exchange": "",
            "x-dead-letter-routing-key": "notification_queue",
        },
    )
    call = channel.default_exchange.publish.await_args
    assert call.kwargs["routing_key"] == delay_queue
    assert call.args[0].expiration is None


@pytest.mark.parametrize(
    ("delay", "bucket"),
    [(0.2, 1), (1.0, 1), (1.01, 2), (4.7, 5), (30.0, 30)],
)
def test_delay_bucket_rounds_up_to_whole_seconds(delay: float, bucket: int) -> None:
    assert delay_bucket(delay) == bucket


@pytest.mark.asyncio
async def test_different_delays_use_separate_delay_queues(
    broker: RabbitMQBroker, channel: MagicMock
) -> None:
    await broker.publish("notification_queue", b"{}", {}, delay=4.2)
    await broker.publish("notification_queue", b"{}", {}, delay=1.3)
    await broker.publish("notification_queue", b"{}", {}, delay=1.9)

    routed = [c.kwargs["routing_key"] for c in channel.default_exchange.publish.await_args_list]
    assert routed == [
        "notification_queue.delay.5s",
        "notification_queue.delay.2s",
        "notification_queue.delay.2s",
    ]
    assert channel.declare_queue.await_count == 2


@pytest.mark.asyncio
async def test_concurrent_publishes_share_one_channel(
    broker: RabbitMQBroker, connection: MagicMock, channel: MagicMock
) -> None:
    async def slow_open(**kwargs: Any) -> MagicMock:
        await asyncio.sleep(0.01)
        return channel

    connection.open_channel = AsyncMock(side_effect=slow_open)

    await asyncio.gather(*(broker.publish("q", b"{}", {}) for _ in range(5)))

    connection.open_channel.assert_awaited_once()
    assert channel.default_exchange.publish.await_count == 5


@pytest.mark.asyncio
async def test_publish_error_wrapped(broker: RabbitMQBroker, channel: MagicMock) -> None:
    channel.default_exchange.publish.side_effect = AMQPConnectionError("gone")
    with pytest.raises(PublishError) as exc_info:
        await broker.publish("q", b"{}", {})
    assert exc_info.value.queue == "q"


@pytest.mark.asyncio
async def test_publish_when_connection_unavailable(
    broker: RabbitMQBroker, connection: MagicMock
) -> None:
    connection.open_channel.side_effect = MessagingConnectionError("refused")
    with pytest.raises(PublishError):
        await broker.publish("q", b"{}", {})


@pytest.mark.asyncio
async def test_declare_queue_is_cached(broker: RabbitMQBroker, channel: MagicMock) -> None:
    await broker.declare_queue("q")
    await broker.declare_queue("q")
    channel.declare_queue.assert_awaited_once_with("q", durable=True, arguments=None)


@pytest.mark.asyncio
async def test_declare_queue_error_wrapped(broker: RabbitMQBroker, channel: MagicMock) -> None:
    channel.declare_queue.side_effect = AMQPConnectionError("gone")
    with pytest.raises(MessagingError):
        await broker.declare_queue("q")


@pytest.mark.asyncio
async def test_consume_maps_incoming_messages(
    broker: RabbitMQBroker, channel: MagicMock
) -> None:
    incoming = _incoming(b'{"type":"welcome"}', {"retryCount": 1})
    queue = channel.declare_queue.return_value
    queue.iterator = MagicMock(return_value=_FakeQueueIterator([incoming]))

    deliveries = [d async for d in broker.consume("notification_queue")]

    [delivery] = deliveries
    assert delivery.body == b'{"type":"welcome"}'
    assert delivery.headers == {"retryCount": 1}
    assert delivery.queue == "notification_queue"
    assert delivery.message_id == "m1"
    assert delivery.delivery_tag == 7
    assert delivery.raw is incoming


@pytest.mark.asyncio
async def test_ack_and_nack_settle_raw_message(broker: RabbitMQBroker) -> None:
    incoming = _incoming()
    delivery = Delivery(body=b"", headers={}, queue="q", raw=incoming)
    await broker.ack(delivery)
    incoming.ack.assert_awaited_once()
    await broker.nack(delivery, requeue=True)
    incoming.nack.assert_awaited_once_with(requeue=True)


@pytest.mark.asyncio
async def test_ack_failure_wrapped(broker: RabbitMQBroker) -> None:
    incoming = _incoming()
    incoming.ack.side_effect = AMQPConnectionError("channel closed")
    with pytest.raises(MessagingError):
        await broker.ack(Delivery(body=b"", headers={}, queue="q", raw=incoming))


@pytest.mark.asyncio
async def test_queue_depth_uses_passive_declare(
    broker: RabbitMQBroker, channel: MagicMock
) -> None:
    depth = await broker.queue_depth("notification_dlq")
    channel.declare_queue.assert_awaited_once_with("notification_dlq", passive=True)
    assert (depth.name, depth.message_count, depth.consumer_count) == (
        "notification_dlq",
        4,
        2,
    )


@pytest.mark.asyncio
async def test_health_check_and_close(
    broker: RabbitMQBroker, connection: MagicMock, channel: MagicMock
) -> None:
    assert await broker.health_check() is True
    await broker.declare_queue("q")
    await broker.close()
    channel.close.assert_awaited_once()
    connection.health_check.return_value = False
    assert await broker.health_check() is False


@pytest.mark.asyncio
async def test_connection_manager_connect_error_wrapped() -> None:
    manager = RabbitMQConnectionManager("amqp://nowhere/")
    with patch(
        "notification_delivery.broker.rabbitmq.connection.aio_pika.connect_robust",
        AsyncMock(side_effect=ConnectionRefusedError("refused")),
    ):
        with pytest.raises(MessagingConnectionError):
            await manager.connect()
    assert manager.is_connected is False


@pytest.mark.asyncio
async def test_connect_with_retry_stops_when_asked() -> None:
    manager = RabbitMQConnectionManager("amqp://nowhere/")
    stop = asyncio.Event()
    attempts = 0

    async def failing_connect(*args: object, **kwargs: object) -> None:
        nonlocal attempts
        attempts += 1
        if attempts == 2:
            stop.set()
        raise ConnectionRefusedError("refused")

    with patch(
        "notification_delivery.broker.rabbitmq.connection.aio_pika.connect_robust",
        failing_connect,
    ):
        connected = await manager.connect_with_retry(retry_delay=0.01, stop=stop)

    assert connected is False
    assert attempts == 2


@pytest.mark.asyncio
async def test_connect_with_retry_succeeds_after_failure() -> None:
    manager = RabbitMQConnectionManager("amqp://broker/")
    robust = MagicMock()
    robust.is_closed = False
    robust.close = AsyncMock()
    connect = AsyncMock(side_effect=[ConnectionRefusedError("refused"), robust])

    with patch(
        "notification_delivery.broker.rabbitmq.connection.aio_pika.connect_robust",
        connect,
    ):
        assert await manager.connect_with_retry(retry_delay=0.01) is True

    assert manager.is_connected is True
    assert await manager.health_check() is True
    await manager.close()
    robust.close.assert_awaited_once()
    assert manager.is_connected is False


@pytest.mark.asyncio
async def test_open_channel_enables_confirms_and_qos() -> None:
    manager = RabbitMQConnectionManager("amqp://broker/")
    robust = MagicMock()
    robust.is_closed = False
    robust.close = AsyncMock()
    channel = MagicMock()
    channel.is_closed = False
    channel.close = AsyncMock()
    channel.set_qos = AsyncMock()
    robust.channel = AsyncMock(return_value=channel)

    with patch(
        "notification_delivery.broker.rabbitmq.connection.aio_pika.connect_robust",
        AsyncMock(return_value=robust),
    ):
        opened = await manager.open_channel(prefetch_count=1)

    assert opened is channel
    robust.channel.assert_awaited_once_with(publisher_confirms=True)
    channel.set_qos.assert_awaited_once_with(prefetch_count=1)
    await manager.close()
    channel.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_open_channel_prunes_closed_channels() -> None:
    manager = RabbitMQConnectionManager("amqp://broker/")
    robust = MagicMock()
    robust.is_closed = False
    robust.close = AsyncMock()
    lost, replacement = MagicMock(), MagicMock()
    for channel in (lost, replacement):
        channel.is_closed = False
        channel.close = AsyncMock()
    robust.channel = AsyncMock(side_effect=[lost, replacement])

    with patch(
        "notification_delivery.broker.rabbitmq.connection.aio_pika.connect_robust",
        AsyncMock(return_value=robust),
    ):
        await manager.open_channel()
        lost.is_closed = True
        await manager.open_channel()

    assert manager.open_channels == 1
    await manager.close()
    lost.close.assert_not_awaited()
    replacement.close.assert_awaited_once()
