"""NotificationEnvelope and transport headers: the unit of work on the queue."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field

BUSINESS_FIELDS = ("type", "recipient", "subject", "content", "template")


class NotificationType(str, Enum):
    """Known notification kinds; anything else is delivered as ``GENERIC``."""

    EMAIL = "email"
    WELCOME = "welcome"
    PASSWORD_RESET = "password_reset"
    TODO_REMINDER = "todo_reminder"
    GENERIC = "generic"

    @classmethod
    def resolve(cls, value: str | None) -> NotificationType:
        try:
            return cls(value)
        except ValueError:
            return cls.GENERIC


class NotificationEnvelope(BaseModel):
    """Immutable notification request as carried over the wire.

    ``recipient`` and ``content`` are left untyped: a structured recipient is
    decodable but undeliverable, which the dispatcher classifies itself.
    Correlation fields travel with the body but are not part of the
    idempotency key.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    type: str | None = None
    recipient: Any = None
    subject: str | None = None
    content: Any = None
    template: str | None = None
    user_id: str | int | None = Field(default=None, alias="userId")
    operation: str | None = None
    todo_id: str | int | None = Field(default=None, alias="todoId")

    @property
    def kind(self) -> NotificationType:
        return NotificationType.resolve(self.type)

    def recipient_is_scalar(self) -> bool:
        value = self.recipient
        if isinstance(value, bool):
            return False
        return isinstance(value, (str, int, float)) and str(value) != ""


# Header names are part of the wire contract shared with other producers.
HEADER_MESSAGE_ID = "messageId"
HEADER_RETRY_COUNT = "retryCount"
HEADER_ORIGINAL_TIMESTAMP = "originalTimestamp"
HEADER_NEXT_RETRY_AT = "nextRetryAt"
HEADER_ORIGINAL_QUEUE = "originalQueue"
HEADER_FAILED_AT = "failedAt"
HEADER_FAILURE_REASON = "failureReason"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeliveryHeaders(BaseModel):
    """Transport metadata kept outside the hashed payload.

    The publisher owns ``message_id`` and ``original_timestamp``; the
    dispatcher owns every later mutation.
    """

    model_config = ConfigDict(frozen=True)

    message_id: str | None = None
    retry_count: int = 0
    original_timestamp: str | None = None
    next_retry_at: str | None = None

    @classmethod
    def initial(cls, message_id: str, now: datetime | None = None) -> DeliveryHeaders:
        return cls(
            message_id=message_id,
            retry_count=0,
            original_timestamp=(now or utcnow()).isoformat(),
        )

    @classmethod
    def from_transport(
        cls,
        headers: dict[str, Any] | None,
        fallback_message_id: str | None = None,
    ) -> DeliveryHeaders:
        """Read headers leniently; bad values degrade to defaults."""
        headers = headers or {}
        message_id = headers.get(HEADER_MESSAGE_ID) or fallback_message_id
        if isinstance(message_id, bytes):
            message_id = message_id.decode("utf-8", errors="replace")
        try:
            retry_count = int(headers.get(HEADER_RETRY_COUNT) or 0)
        except (TypeError, ValueError):
            retry_count = 0
        original = headers.get(HEADER_ORIGINAL_TIMESTAMP)
        next_retry = headers.get(HEADER_NEXT_RETRY_AT)
        return cls(
            message_id=str(message_id) if message_id else None,
            retry_count=max(0, retry_count),
            original_timestamp=str(original) if original else None,
            next_retry_at=str(next_retry) if next_retry else None,
        )

    def to_transport(self) -> dict[str, Any]:
        headers: dict[str, Any] = {HEADER_RETRY_COUNT: self.retry_count}
        if self.message_id is not None:
            headers[HEADER_MESSAGE_ID] = self.message_id
        if self.original_timestamp is not None:
            headers[HEADER_ORIGINAL_TIMESTAMP] = self.original_timestamp
        if self.next_retry_at is not None:
            headers[HEADER_NEXT_RETRY_AT] = self.next_retry_at
        return headers

    def for_retry(self, next_retry_at: datetime) -> DeliveryHeaders:
        return self.model_copy(
            update={
                "retry_count": self.retry_count + 1,
                "next_retry_at": next_retry_at.isoformat(),
            }
        )


@dataclass(frozen=True)
class Immediate:
    """Retry as soon as the broker redelivers."""


@dataclass(frozen=True)
class DelayedUntil:
    """Retry no earlier than ``at``."""

    at: datetime

    def delay_seconds(self, now: datetime | None = None) -> float:
        return max(0.0, (self.at - (now or utcnow())).total_seconds())


RetrySchedule = Union[Immediate, DelayedUntil]
