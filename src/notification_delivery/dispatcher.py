"""DeliveryDispatcher: per-message state machine for consumed notifications.

States per delivery::

    Received -> Deduplicating -> Processing -> Acked-Success
                                             | Requeued
                                             | DeadLettered
                                             | Discarded

A delivery whose id is claimed by another in-flight worker, or whose ledger
lookup fails, is ``Deferred``: nacked with requeue and seen again later.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any

from .backoff import RetryPolicyRegistry
from .codec import EnvelopeCodec
from .correlation import HEADER_CORRELATION_ID, set_correlation_id
from .envelope import (
    HEADER_FAILED_AT,
    HEADER_FAILURE_REASON,
    HEADER_MESSAGE_ID,
    HEADER_ORIGINAL_QUEUE,
    HEADER_RETRY_COUNT,
    DelayedUntil,
    DeliveryHeaders,
    utcnow,
)
from .exceptions import (
    DeadLetterPublishError,
    DecodeError,
    LedgerError,
    MalformedRecipientError,
    MessagingError,
    TransientSendError,
    is_retryable,
)
from .instrumentation import get_hook_registry
from .ledger.base import ClaimResult, LedgerState
from .observability import MESSAGES_TOTAL, SEND_DURATION, log_event
from .senders.base import OutboundNotification

if TYPE_CHECKING:
    from collections.abc import Callable

    from .backoff import BackoffPolicy
    from .broker.base import Delivery, IBroker
    from .envelope import NotificationEnvelope, RetrySchedule
    from .ledger.base import IIdempotencyLedger
    from .senders.base import INotificationSender

logger = logging.getLogger("notification_delivery.dispatcher")


class Outcome(str, Enum):
    """Terminal state of one delivery."""

    DELIVERED = "delivered"
    DUPLICATE = "duplicate"
    REQUEUED = "requeued"
    DEAD_LETTERED = "dead_lettered"
    DISCARDED = "discarded"
    DEFERRED = "deferred"


@dataclass(frozen=True)
class DispatchResult:
    """What happened to a delivery and why."""

    outcome: Outcome
    message_id: str | None
    retry_count: int = 0
    reason: str | None = None
    schedule: RetrySchedule | None = None


def _reason(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


class DeliveryDispatcher:
    """Processes one delivery at a time: dedup, send, classify, settle.

    Every path ends with exactly one ack or nack of the original delivery.
    Retries are republished copies with ``retryCount + 1``; the original is
    acked only after the copy (or DLQ entry) has been accepted. Delivered and
    dead-lettered ids are recorded in the ledger, so redeliveries of either
    are acked without another send.
    """

    def __init__(
        self,
        broker: IBroker,
        sender: INotificationSender,
        ledger: IIdempotencyLedger,
        *,
        queue_name: str = "notification_queue",
        dlq_name: str = "notification_dlq",
        retry_policies: RetryPolicyRegistry | None = None,
        codec: EnvelopeCodec | None = None,
        send_timeout: float | None = 30.0,
        dead_letter_malformed: bool = False,
        defer_delay: float = 1.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """Configure the dispatcher.

        Args:
            broker: Channel the delivery came from; used to settle and
                republish.
            sender: Downstream collaborator performing the side effect.
            ledger: Idempotency ledger, shared across instances in production.
            queue_name: Main queue; retries are republished here.
            dlq_name: Dead-letter queue for exhausted messages.
            retry_policies: Backoff policy per notification type.
            codec: Envelope codec.
            send_timeout: Per-attempt bound on the sender call; expiry is a
                transient failure. None disables it.
            dead_letter_malformed: Also copy malformed messages to the DLQ.
            defer_delay: Pause before requeueing a deferred delivery or one
                whose retry copy could not be republished.
            clock: Source of "now" for retry and failure timestamps.
        """
        self._broker = broker
        self._sender = sender
        self._ledger = ledger
        self._queue_name = queue_name
        self._dlq_name = dlq_name
        self._policies = retry_policies or RetryPolicyRegistry()
        self._codec = codec or EnvelopeCodec()
        self._send_timeout = send_timeout
        self._dead_letter_malformed = dead_letter_malformed
        self._defer_delay = defer_delay
        self._clock = clock

    async def process(self, delivery: Delivery) -> DispatchResult:
        """Drive one delivery to a terminal state."""
        headers = DeliveryHeaders.from_transport(delivery.headers, delivery.message_id)
        correlation_id = delivery.headers.get(HEADER_CORRELATION_ID)
        set_correlation_id(str(correlation_id) if correlation_id else None)
        log_event(
            logger,
            "message_received",
            message_id=headers.message_id,
            retry_count=headers.retry_count,
            queue=delivery.queue,
            redelivered=delivery.redelivered,
        )
        result: DispatchResult = await get_hook_registry().execute_all(
            "dispatcher.process",
            {"message_id": headers.message_id, "queue": delivery.queue},
            lambda: self._process(delivery, headers),
        )
        MESSAGES_TOTAL.labels(outcome=result.outcome.value).inc()
        return result

    async def _process(
        self, delivery: Delivery, headers: DeliveryHeaders
    ) -> DispatchResult:
        message_id = headers.message_id

        # Deduplicating: a redelivery of a finished message must not send again.
        if message_id is not None:
            duplicate = await self._check_duplicate(delivery, headers)
            if duplicate is not None:
                return duplicate

        # Processing
        try:
            envelope = self._codec.decode(delivery.body)
        except DecodeError as e:
            return await self._discard(delivery, headers, e)

        if message_id is None:
            message_id = self._codec.compute_message_id(envelope)
            headers = headers.model_copy(update={"message_id": message_id})
            duplicate = await self._check_duplicate(delivery, headers)
            if duplicate is not None:
                return duplicate

        policy = self._policies.policy_for(envelope.type)
        if headers.retry_count > policy.max_retries:
            headers = headers.model_copy(update={"retry_count": policy.max_retries})

        if not envelope.recipient_is_scalar():
            return await self._discard(
                delivery, headers, MalformedRecipientError(envelope.recipient)
            )

        try:
            claim = await self._ledger.claim(message_id)
        except LedgerError as e:
            return await self._defer(delivery, headers, _reason(e))
        if claim.is_terminal:
            return await self._ack_duplicate(delivery, headers)
        if claim is ClaimResult.IN_FLIGHT:
            return await self._defer(delivery, headers, "in flight on another worker")

        sent = False
        failure: Exception | None = None
        try:
            await self._send(OutboundNotification.from_envelope(envelope))
            sent = True
        except Exception as e:  # noqa: BLE001
            failure = e
        finally:
            if not sent:
                await self._ledger.release(message_id)

        if failure is not None:
            return await self._handle_failure(delivery, headers, envelope, policy, failure)

        try:
            await self._ledger.record(message_id)
        except LedgerError:
            # The side effect already happened; requeueing would repeat it.
            logger.exception("Delivered %s but could not record it", message_id)
        await self._broker.ack(delivery)
        log_event(
            logger,
            "message_processed",
            message_id=message_id,
            recipient=envelope.recipient,
            retry_count=headers.retry_count,
        )
        return DispatchResult(Outcome.DELIVERED, message_id, headers.retry_count)

    async def _check_duplicate(
        self, delivery: Delivery, headers: DeliveryHeaders
    ) -> DispatchResult | None:
        assert headers.message_id is not None
        try:
            seen = await self._ledger.has(headers.message_id)
        except LedgerError as e:
            return await self._defer(delivery, headers, _reason(e))
        if seen:
            return await self._ack_duplicate(delivery, headers)
        return None

    async def _ack_duplicate(
        self, delivery: Delivery, headers: DeliveryHeaders
    ) -> DispatchResult:
        await self._broker.ack(delivery)
        log_event(logger, "message_duplicate", message_id=headers.message_id)
        return DispatchResult(Outcome.DUPLICATE, headers.message_id, headers.retry_count)

    async def _send(self, outbound: OutboundNotification) -> None:
        start = time.monotonic()
        outcome = "success"
        try:
            await asyncio.wait_for(
                self._sender.send(
                    outbound.recipient,
                    outbound.subject,
                    outbound.content,
                    outbound.template,
                ),
                timeout=self._send_timeout,
            )
        except asyncio.TimeoutError as e:
            outcome = "timeout"
            raise TransientSendError(
                f"send timed out after {self._send_timeout}s", outbound.recipient
            ) from e
        except Exception:
            outcome = "error"
            raise
        finally:
            SEND_DURATION.labels(outcome=outcome).observe(time.monotonic() - start)

    async def _handle_failure(
        self,
        delivery: Delivery,
        headers: DeliveryHeaders,
        envelope: NotificationEnvelope,
        policy: BackoffPolicy,
        exc: Exception,
    ) -> DispatchResult:
        if not is_retryable(exc):
            return await self._discard(delivery, headers, exc)
        if policy.should_retry(headers.retry_count):
            return await self._requeue(delivery, headers, policy, exc)
        return await self._dead_letter(delivery, headers, exc)

    async def _requeue(
        self,
        delivery: Delivery,
        headers: DeliveryHeaders,
        policy: BackoffPolicy,
        exc: Exception,
    ) -> DispatchResult:
        now = self._clock()
        delay, schedule = policy.schedule(headers.retry_count, now)
        retry_headers = headers.for_retry(now + timedelta(seconds=delay))
        transport: dict[str, Any] = {**delivery.headers, **retry_headers.to_transport()}
        try:
            await self._broker.publish(
                self._queue_name,
                delivery.body,
                transport,
                message_id=retry_headers.message_id,
                delay=(
                    schedule.delay_seconds(now)
                    if isinstance(schedule, DelayedUntil)
                    else None
                ),
            )
        except MessagingError as e:
            logger.error(
                "Could not republish %s for retry (%s); returning it to the queue",
                headers.message_id,
                e,
            )
            await self._pause()
            await self._broker.nack(delivery, requeue=True)
            return DispatchResult(
                Outcome.DEFERRED, headers.message_id, headers.retry_count, _reason(e)
            )
        await self._broker.ack(delivery)
        log_event(
            logger,
            "message_retry",
            level=logging.WARNING,
            message_id=headers.message_id,
            attempt=f"{retry_headers.retry_count}/{policy.max_retries}",
            backoff_delay_ms=round(delay * 1000),
            next_retry_at=retry_headers.next_retry_at,
            reason=_reason(exc),
        )
        return DispatchResult(
            Outcome.REQUEUED,
            headers.message_id,
            retry_headers.retry_count,
            _reason(exc),
            schedule,
        )

    def _dead_letter_headers(
        self, delivery: Delivery, headers: DeliveryHeaders, reason: str
    ) -> dict[str, Any]:
        return {
            **delivery.headers,
            HEADER_MESSAGE_ID: headers.message_id,
            HEADER_RETRY_COUNT: headers.retry_count,
            HEADER_ORIGINAL_QUEUE: delivery.queue,
            HEADER_FAILED_AT: self._clock().isoformat(),
            HEADER_FAILURE_REASON: reason,
        }

    async def _publish_dead_letter(
        self, delivery: Delivery, headers: DeliveryHeaders, reason: str
    ) -> None:
        try:
            await self._broker.publish(
                self._dlq_name,
                delivery.body,
                self._dead_letter_headers(delivery, headers, reason),
                message_id=headers.message_id,
            )
        except MessagingError as e:
            raise DeadLetterPublishError(
                f"Failed to publish to {self._dlq_name}: {e}",
                message_id=headers.message_id,
            ) from e

    def _log_dead_letter_failure(
        self, exc: DeadLetterPublishError, reason: str
    ) -> None:
        log_event(
            logger,
            "dlq_publish_failed",
            level=logging.ERROR,
            message_id=exc.message_id,
            reason=reason,
            error=str(exc),
        )

    async def _dead_letter(
        self, delivery: Delivery, headers: DeliveryHeaders, exc: Exception
    ) -> DispatchResult:
        assert headers.message_id is not None
        reason = _reason(exc)
        try:
            await self._publish_dead_letter(delivery, headers, reason)
        except DeadLetterPublishError as e:
            self._log_dead_letter_failure(e, reason)
            # Acked anyway: losing the message beats redelivering it forever.
            await self._broker.ack(delivery)
            return DispatchResult(
                Outcome.DISCARDED, headers.message_id, headers.retry_count, reason
            )
        try:
            await self._ledger.record(headers.message_id, LedgerState.DEAD_LETTERED)
        except LedgerError:
            logger.exception("Dead-lettered %s but could not record it", headers.message_id)
        await self._broker.ack(delivery)
        log_event(
            logger,
            "message_dlq",
            level=logging.ERROR,
            message_id=headers.message_id,
            retry_count=headers.retry_count,
            reason=reason,
        )
        return DispatchResult(
            Outcome.DEAD_LETTERED, headers.message_id, headers.retry_count, reason
        )

    async def _discard(
        self, delivery: Delivery, headers: DeliveryHeaders, exc: Exception
    ) -> DispatchResult:
        reason = _reason(exc)
        if self._dead_letter_malformed:
            try:
                await self._publish_dead_letter(delivery, headers, reason)
            except DeadLetterPublishError as e:
                self._log_dead_letter_failure(e, reason)
        await self._broker.ack(delivery)
        log_event(
            logger,
            "message_discarded",
            level=logging.WARNING,
            message_id=headers.message_id,
            reason=reason,
        )
        return DispatchResult(
            Outcome.DISCARDED, headers.message_id, headers.retry_count, reason
        )

    async def _defer(
        self, delivery: Delivery, headers: DeliveryHeaders, reason: str
    ) -> DispatchResult:
        await self._pause()
        await self._broker.nack(delivery, requeue=True)
        logger.info("Deferred %s: %s", headers.message_id, reason)
        return DispatchResult(
            Outcome.DEFERRED, headers.message_id, headers.retry_count, reason
        )

    async def _pause(self) -> None:
        if self._defer_delay > 0:
            await asyncio.sleep(self._defer_delay)
