"""NotificationPublisher: validate, key and durably enqueue notifications."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError as PydanticValidationError

from .codec import EnvelopeCodec
from .correlation import HEADER_CORRELATION_ID, get_correlation_id
from .envelope import DeliveryHeaders, NotificationEnvelope
from .exceptions import MessagingError, PublishError, ValidationError
from .instrumentation import get_hook_registry
from .observability import PUBLISHED_TOTAL, log_event

if TYPE_CHECKING:
    from .broker.base import IBroker

logger = logging.getLogger("notification_delivery.publisher")


@dataclass(frozen=True)
class PublishReceipt:
    """Returned to the caller once the broker has accepted the message."""

    message_id: str
    queue: str


def coerce_envelope(
    envelope: NotificationEnvelope | dict[str, Any],
) -> NotificationEnvelope:
    """Build an envelope from a request body, mapping field errors."""
    if isinstance(envelope, NotificationEnvelope):
        return envelope
    try:
        return NotificationEnvelope.model_validate(envelope)
    except PydanticValidationError as e:
        errors: dict[str, list[str]] = {}
        for error in e.errors():
            field = ".".join(str(part) for part in error["loc"]) or "__root__"
            errors.setdefault(field, []).append(error["msg"])
        raise ValidationError(errors) from e


def validate_envelope(envelope: NotificationEnvelope) -> None:
    """Reject envelopes without a type or recipient."""
    errors: dict[str, list[str]] = {}
    if not envelope.type:
        errors["type"] = ["type is required"]
    if envelope.recipient is None or envelope.recipient == "":
        errors["recipient"] = ["recipient is required"]
    if errors:
        raise ValidationError(errors)


class NotificationPublisher:
    """Publishes envelopes to the main queue with idempotency metadata.

    The idempotency key and initial delivery headers travel as transport
    headers; the body is the canonical envelope encoding. Queues are declared
    durable on first use.
    """

    def __init__(
        self,
        broker: IBroker,
        *,
        queue_name: str = "notification_queue",
        dlq_name: str = "notification_dlq",
        codec: EnvelopeCodec | None = None,
    ) -> None:
        self._broker = broker
        self._queue_name = queue_name
        self._dlq_name = dlq_name
        self._codec = codec or EnvelopeCodec()
        self._declared: set[str] = set()

    @property
    def queue_name(self) -> str:
        return self._queue_name

    async def _ensure_queue(self, queue: str) -> None:
        if queue in self._declared:
            return
        try:
            if queue == self._queue_name:
                # The DLQ must exist before anything can be dead-lettered.
                await self._broker.declare_queue(self._dlq_name, durable=True)
            await self._broker.declare_queue(queue, durable=True)
        except PublishError:
            raise
        except MessagingError as e:
            raise PublishError(f"broker channel not available: {e}", queue=queue) from e
        self._declared.add(queue)

    async def publish(
        self, queue_name: str, envelope: NotificationEnvelope | dict[str, Any]
    ) -> PublishReceipt:
        """Publish *envelope* to *queue_name*.

        Raises:
            ValidationError: type or recipient is missing, or the content
                cannot be serialized to JSON; nothing is sent.
            PublishError: the broker did not accept the message.
        """
        envelope = coerce_envelope(envelope)
        validate_envelope(envelope)
        message_id = self._codec.compute_message_id(envelope)
        attributes = {
            "queue": queue_name,
            "message_id": message_id,
            "notification.type": envelope.type,
        }
        return await get_hook_registry().execute_all(
            f"publisher.publish.{queue_name}",
            attributes,
            lambda: self._publish(queue_name, envelope, message_id),
        )

    async def _publish(
        self, queue_name: str, envelope: NotificationEnvelope, message_id: str
    ) -> PublishReceipt:
        headers = DeliveryHeaders.initial(message_id).to_transport()
        correlation_id = get_correlation_id()
        if correlation_id:
            headers[HEADER_CORRELATION_ID] = correlation_id
        try:
            await self._ensure_queue(queue_name)
            await self._broker.publish(
                queue_name,
                self._codec.encode(envelope),
                headers,
                message_id=message_id,
            )
        except PublishError as e:
            log_event(
                logger,
                "publish_failed",
                level=logging.ERROR,
                queue=queue_name,
                type=envelope.type,
                error=str(e),
            )
            raise
        PUBLISHED_TOTAL.labels(queue=queue_name).inc()
        log_event(
            logger,
            "message_published",
            queue=queue_name,
            message_id=message_id,
            type=envelope.type,
            recipient=envelope.recipient,
        )
        return PublishReceipt(message_id=message_id, queue=queue_name)

    async def publish_notification(
        self, envelope: NotificationEnvelope | dict[str, Any]
    ) -> PublishReceipt:
        """Publish to the configured main queue."""
        return await self.publish(self._queue_name, envelope)

    async def publish_best_effort(
        self, envelope: NotificationEnvelope | dict[str, Any]
    ) -> PublishReceipt | None:
        """Publish without ever failing the caller's business operation.

        Returns None when the notification could not be enqueued; the
        failure is logged.
        """
        try:
            return await self.publish_notification(envelope)
        except (PublishError, ValidationError) as e:
            logger.warning("Notification not published: %s", e)
            return None
