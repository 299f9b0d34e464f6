"""Wiring from DeliverySettings to concrete adapters, plus the worker entry point."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from typing import TYPE_CHECKING

from .broker.rabbitmq import RabbitMQBroker, RabbitMQConnectionManager
from .config import DeliverySettings, get_settings
from .dispatcher import DeliveryDispatcher
from .health import HealthRegistry
from .ledger import InMemoryIdempotencyLedger, RedisIdempotencyLedger
from .observability import configure_logging
from .senders import SmtpEmailSender
from .worker import DeliveryWorker

if TYPE_CHECKING:
    from .broker.base import IBroker
    from .ledger import IIdempotencyLedger
    from .senders import INotificationSender

logger = logging.getLogger("notification_delivery.bootstrap")


def build_ledger(settings: DeliverySettings) -> IIdempotencyLedger:
    """Redis ledger when ``redis_url`` is set, else the in-process one."""
    if not settings.redis_url:
        logger.warning(
            "NOTIFY_REDIS_URL is not set; using the in-memory ledger "
            "(dedup is per process only)"
        )
        return InMemoryIdempotencyLedger(claim_ttl=settings.claim_ttl)
    from redis.asyncio import Redis

    client = Redis.from_url(settings.redis_url)
    return RedisIdempotencyLedger(
        client,
        key_prefix=settings.ledger_key_prefix,
        ttl=settings.ledger_ttl,
        claim_ttl=settings.claim_ttl,
    )


def build_sender(settings: DeliverySettings) -> SmtpEmailSender:
    return SmtpEmailSender(
        host=settings.smtp_host,
        port=settings.smtp_port,
        username=settings.smtp_username,
        password=settings.smtp_password,
        use_tls=settings.smtp_use_tls,
        timeout=settings.send_timeout,
        from_email=settings.smtp_from,
    )


def build_broker(
    connection: RabbitMQConnectionManager, settings: DeliverySettings
) -> RabbitMQBroker:
    return RabbitMQBroker(
        connection,
        prefetch_count=settings.prefetch_count,
        publish_timeout=settings.publish_timeout,
    )


def build_dispatcher(
    broker: IBroker,
    sender: INotificationSender,
    ledger: IIdempotencyLedger,
    settings: DeliverySettings,
) -> DeliveryDispatcher:
    return DeliveryDispatcher(
        broker,
        sender,
        ledger,
        queue_name=settings.queue_name,
        dlq_name=settings.dlq_name,
        retry_policies=settings.retry_policies(),
        send_timeout=settings.send_timeout,
        dead_letter_malformed=settings.dead_letter_malformed,
    )


def build_worker(
    connection: RabbitMQConnectionManager,
    sender: INotificationSender,
    ledger: IIdempotencyLedger,
    settings: DeliverySettings,
    health: HealthRegistry | None = None,
) -> DeliveryWorker:
    return DeliveryWorker(
        lambda: build_broker(connection, settings),
        lambda broker: build_dispatcher(broker, sender, ledger, settings),
        queue_name=settings.queue_name,
        dlq_name=settings.dlq_name,
        concurrency=settings.concurrency,
        shutdown_timeout=settings.shutdown_timeout,
        health=health,
        name=f"{settings.service_name}-worker",
    )


async def run_worker(settings: DeliverySettings | None = None) -> None:
    """Connect, consume until SIGINT/SIGTERM, then drain and close."""
    settings = settings or get_settings()
    configure_logging(settings.log_level, json_output=settings.log_json)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)

    connection = RabbitMQConnectionManager(settings.rabbitmq_url)
    if not await connection.connect_with_retry(
        retry_delay=settings.reconnect_delay, stop=stop
    ):
        logger.info("Stopped before the broker connection was established")
        return

    ledger = build_ledger(settings)
    worker = build_worker(connection, build_sender(settings), ledger, settings)
    await worker.start()
    try:
        await stop.wait()
    finally:
        logger.info("Shutdown requested; draining in-flight deliveries")
        await worker.stop()
        await connection.close()
        if isinstance(ledger, RedisIdempotencyLedger):
            await ledger.close()


def main() -> None:
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
