"""HTTP surface: publish endpoints, direct send, health and queue status."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator
from datetime import datetime, timezone
from typing import Any

from fastapi import Body, FastAPI, Request
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.responses import Response

from ..broker.base import IBroker
from ..exceptions import DeliveryFailure, MessagingError, PublishError, ValidationError
from ..health import HealthRegistry, QueueStatusReporter
from ..observability import log_event
from ..publisher import NotificationPublisher, coerce_envelope, validate_envelope
from ..senders.base import INotificationSender, OutboundNotification
from .middleware import CorrelationIdMiddleware

logger = logging.getLogger("notification_delivery.api")

DLQ_RETENTION = "7 days"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def create_app(
    broker: IBroker,
    *,
    sender: INotificationSender | None = None,
    queue_name: str = "notification_queue",
    dlq_name: str = "notification_dlq",
    service_name: str = "notification-delivery",
    health: HealthRegistry | None = None,
    lifespan: Any = None,
) -> FastAPI:
    """Build the FastAPI application around an already-wired broker.

    Args:
        broker: Broker used for publishing and queue inspection.
        sender: Sender for ``POST /api/notifications/send``; the endpoint
            answers 503 when None.
        health: Optional registry whose components are added to
            ``GET /api/health``.
        lifespan: Passed through to FastAPI (connection management).
    """
    app = FastAPI(title=service_name, lifespan=lifespan)
    app.add_middleware(CorrelationIdMiddleware)

    publisher = NotificationPublisher(broker, queue_name=queue_name, dlq_name=dlq_name)
    reporter = QueueStatusReporter(broker, queue_name=queue_name, dlq_name=dlq_name)
    app.state.publisher = publisher
    app.state.reporter = reporter

    @app.exception_handler(ValidationError)
    async def _validation_error(request: Request, exc: ValidationError) -> JSONResponse:
        logger.warning("Rejected %s: %s", request.url.path, exc.errors)
        return JSONResponse(
            status_code=400,
            content={"error": "Type and recipient are required", "details": exc.errors},
        )

    @app.exception_handler(PublishError)
    async def _publish_error(request: Request, exc: PublishError) -> JSONResponse:
        logger.error("Publish failed on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=503, content={"error": "Failed to publish message"})

    @app.post("/api/notifications/publish")
    async def publish_notification(
        payload: dict[str, Any] = Body(...),  # noqa: B008
    ) -> dict[str, Any]:
        receipt = await publisher.publish_notification(payload)
        return {
            "message": "Notification published successfully",
            "type": payload.get("type"),
            "recipient": payload.get("recipient"),
            "messageId": receipt.message_id,
            "timestamp": _now(),
        }

    @app.post("/api/messages/publish")
    async def publish_message(
        payload: dict[str, Any] = Body(...),  # noqa: B008
    ) -> Any:
        queue = payload.get("queue")
        data = payload.get("data")
        if not queue or not data:
            return JSONResponse(
                status_code=400, content={"error": "Queue name and data are required"}
            )
        receipt = await publisher.publish(queue, data)
        return {
            "message": "Message published successfully",
            "queue": receipt.queue,
            "messageId": receipt.message_id,
            "timestamp": _now(),
        }

    @app.post("/api/notifications/send")
    async def send_notification(
        payload: dict[str, Any] = Body(...),  # noqa: B008
    ) -> Any:
        if sender is None:
            return JSONResponse(
                status_code=503, content={"error": "No sender configured"}
            )
        envelope = coerce_envelope(payload)
        validate_envelope(envelope)
        outbound = OutboundNotification.from_envelope(envelope)
        try:
            await sender.send(
                outbound.recipient, outbound.subject, outbound.content, outbound.template
            )
        except (DeliveryFailure, ValueError) as e:
            log_event(
                logger,
                "direct_send_failed",
                level=logging.ERROR,
                recipient=outbound.recipient,
                error=str(e),
            )
            return JSONResponse(
                status_code=500, content={"error": "Failed to send notification"}
            )
        log_event(logger, "direct_send", recipient=outbound.recipient, type=envelope.type)
        return {"message": "Notification sent successfully"}

    @app.get("/api/health")
    async def health_check() -> dict[str, Any]:
        status = await reporter.status()
        body: dict[str, Any] = {
            "status": status.status,
            "service": service_name,
            **status.as_dict(),
            "timestamp": _now(),
        }
        if health is not None:
            body["components"] = (await health.status())["components"]
        return body

    @app.get("/api/queue/status")
    async def queue_status() -> Any:
        if not await broker.health_check():
            return JSONResponse(
                status_code=503,
                content={"status": "disconnected", "error": "RabbitMQ channel not available"},
            )
        try:
            main = await reporter.depth(queue_name)
            dlq = await reporter.depth(dlq_name)
        except MessagingError as e:
            logger.exception("Queue status check failed")
            return JSONResponse(status_code=500, content={"status": "error", "error": str(e)})
        return {
            "status": "connected",
            "queues": {
                "main": {
                    "name": main.name,
                    "messageCount": main.message_count,
                    "consumerCount": main.consumer_count,
                },
                "dlq": {
                    "name": dlq.name,
                    "messageCount": dlq.message_count,
                    "consumerCount": dlq.consumer_count,
                },
            },
            "connection": "active",
        }

    @app.get("/api/dlq/messages")
    async def dlq_messages() -> Any:
        if not await broker.health_check():
            return JSONResponse(
                status_code=503, content={"error": "RabbitMQ channel not available"}
            )
        try:
            dlq = await reporter.depth(dlq_name)
        except MessagingError as e:
            logger.exception("DLQ check failed")
            return JSONResponse(status_code=500, content={"error": str(e)})
        return {
            "queue": dlq.name,
            "messageCount": dlq.message_count,
            "consumerCount": dlq.consumer_count,
            "timestamp": _now(),
        }

    @app.get("/api/queues")
    async def list_queues() -> dict[str, Any]:
        return {
            "queues": [
                {
                    "name": queue_name,
                    "description": "Notification queue for email and other notifications",
                    "durable": True,
                    "hasDLQ": True,
                },
                {
                    "name": dlq_name,
                    "description": "Dead Letter Queue for failed notifications",
                    "durable": True,
                    "ttl": DLQ_RETENTION,
                },
            ],
            "timestamp": _now(),
        }

    @app.get("/metrics")
    async def metrics() -> Response:
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


def create_app_from_settings(settings: Any = None) -> FastAPI:
    """Application factory for uvicorn (``--factory``).

    The broker connection is retried in the background so the health
    endpoints answer ``degraded`` until RabbitMQ is reachable.
    """
    from ..bootstrap import build_broker, build_sender
    from ..broker.rabbitmq import RabbitMQConnectionManager
    from ..config import get_settings
    from ..observability import configure_logging

    settings = settings or get_settings()
    configure_logging(settings.log_level, json_output=settings.log_json)
    connection = RabbitMQConnectionManager(settings.rabbitmq_url)
    broker = build_broker(connection, settings)

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        stop = asyncio.Event()
        connect_task = asyncio.create_task(
            connection.connect_with_retry(retry_delay=settings.reconnect_delay, stop=stop)
        )
        try:
            yield
        finally:
            stop.set()
            await connect_task
            await broker.close()
            await connection.close()

    return create_app(
        broker,
        sender=build_sender(settings),
        queue_name=settings.queue_name,
        dlq_name=settings.dlq_name,
        service_name=settings.service_name,
        lifespan=lifespan,
    )


def main() -> None:
    import uvicorn

    from ..config import get_settings

    settings = get_settings()
    uvicorn.run(
        "notification_delivery.api.app:create_app_from_settings",
        factory=True,
        host=settings.http_host,
        port=settings.http_port,
    )
