"""DeliveryWorker: explicit pull loop per broker channel with graceful drain."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import TYPE_CHECKING

from .exceptions import MessagingError

if TYPE_CHECKING:
    from collections.abc import Callable

    from .broker.base import Delivery, IBroker
    from .dispatcher import DeliveryDispatcher, DispatchResult
    from .health import HealthRegistry

logger = logging.getLogger("notification_delivery.worker")


class DeliveryWorker:
    """Runs ``concurrency`` consumer loops, each on its own channel.

    Each loop pulls one delivery, lets the dispatcher settle it, then pulls
    the next; the channel prefetch bounds what the broker pushes ahead.
    :meth:`stop` stops pulling, waits up to ``shutdown_timeout`` for
    in-flight deliveries to settle, then cancels what is left. Unsettled
    deliveries return to the queue when the channel closes.

    Implements the ``start`` / ``stop`` background worker lifecycle.
    """

    def __init__(
        self,
        broker_factory: Callable[[], IBroker],
        dispatcher_factory: Callable[[IBroker], DeliveryDispatcher],
        *,
        queue_name: str = "notification_queue",
        dlq_name: str = "notification_dlq",
        concurrency: int = 1,
        shutdown_timeout: float = 30.0,
        heartbeat_interval: float = 10.0,
        restart_delay: float = 5.0,
        health: HealthRegistry | None = None,
        name: str = "notification-worker",
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self._broker_factory = broker_factory
        self._dispatcher_factory = dispatcher_factory
        self._queue_name = queue_name
        self._dlq_name = dlq_name
        self._concurrency = concurrency
        self._shutdown_timeout = shutdown_timeout
        self._heartbeat_interval = heartbeat_interval
        self._restart_delay = restart_delay
        self._health = health
        self._name = name
        self._running = False
        self._stopping = asyncio.Event()
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._busy: set[str] = set()
        self._heartbeat_task: asyncio.Task[None] | None = None
        self.processed = 0

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._stopping.clear()
        for index in range(self._concurrency):
            loop_name = f"{self._name}-{index}"
            self._tasks[loop_name] = asyncio.create_task(
                self._run_loop(loop_name), name=loop_name
            )
        if self._health is not None:
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        logger.info(
            "DeliveryWorker started (queue=%s, concurrency=%d)",
            self._queue_name,
            self._concurrency,
        )

    async def stop(self) -> None:
        if not self._running:
            return
        self._stopping.set()
        # Loops blocked waiting for a message have nothing to drain.
        for loop_name, task in self._tasks.items():
            if loop_name not in self._busy:
                task.cancel()
        tasks = list(self._tasks.values())
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=self._shutdown_timeout)
            for task in pending:
                logger.warning("Cancelling %s with a delivery in flight", task.get_name())
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._heartbeat_task
            self._heartbeat_task = None
        self._tasks.clear()
        self._running = False
        logger.info("DeliveryWorker stopped after %d deliveries", self.processed)

    async def wait(self) -> None:
        """Block until every consumer loop has exited."""
        await asyncio.gather(*self._tasks.values(), return_exceptions=True)

    async def _run_loop(self, loop_name: str) -> None:
        try:
            while not self._stopping.is_set():
                broker = self._broker_factory()
                dispatcher = self._dispatcher_factory(broker)
                try:
                    await self._consume(loop_name, broker, dispatcher)
                except MessagingError:
                    logger.exception(
                        "Consumer loop %s lost its channel; restarting in %.1fs",
                        loop_name,
                        self._restart_delay,
                    )
                finally:
                    await broker.close()
                if not self._stopping.is_set():
                    await asyncio.sleep(self._restart_delay)
        finally:
            if self._health is not None:
                self._health.forget(loop_name)

    async def _consume(
        self, loop_name: str, broker: IBroker, dispatcher: DeliveryDispatcher
    ) -> None:
        # Exhausted messages are republished to the DLQ from this channel.
        await broker.declare_queue(self._queue_name, durable=True)
        await broker.declare_queue(self._dlq_name, durable=True)
        async with contextlib.aclosing(broker.consume(self._queue_name)) as deliveries:  # type: ignore[type-var]
            async for delivery in deliveries:
                self._busy.add(loop_name)
                try:
                    await self._handle(dispatcher, delivery)
                finally:
                    self._busy.discard(loop_name)
                if self._stopping.is_set():
                    break

    async def _handle(
        self, dispatcher: DeliveryDispatcher, delivery: Delivery
    ) -> DispatchResult | None:
        try:
            result = await dispatcher.process(delivery)
        except MessagingError:
            # Settling failed; the broker redelivers and the ledger dedups.
            logger.exception("Failed to settle delivery")
            return None
        self.processed += 1
        return result

    async def _heartbeat_loop(self) -> None:
        assert self._health is not None
        while True:
            for loop_name, task in self._tasks.items():
                if not task.done():
                    self._health.heartbeat(loop_name)
            await asyncio.sleep(self._heartbeat_interval)
