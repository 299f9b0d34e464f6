"""Error taxonomy for notification publishing and delivery."""

from __future__ import annotations


class NotificationDeliveryError(Exception):
    """Root exception for the notification delivery subsystem."""


class ValidationError(NotificationDeliveryError):
    """Raised when an envelope is rejected at publish time.

    Carries structured errors: ``{field: [messages]}``.
    """

    def __init__(self, errors: dict[str, list[str]] | str | None = None) -> None:
        if isinstance(errors, str):
            self.errors: dict[str, list[str]] = {"__root__": [errors]}
        elif errors is None:
            self.errors = {}
        else:
            self.errors = errors
        super().__init__(str(self.errors))


class InfrastructureError(NotificationDeliveryError):
    """Base class for broker, store and transport failures."""


class MessagingError(InfrastructureError):
    """Base class for all messaging-related infrastructure errors."""


class MessagingConnectionError(MessagingError):
    """Raised when connectivity to the message broker fails."""


class PublishError(MessagingError):
    """Raised when the broker does not accept a published message."""

    def __init__(self, message: str, queue: str | None = None) -> None:
        self.queue = queue
        super().__init__(message)


class DeadLetterPublishError(PublishError):
    """Raised when a message cannot be moved to the dead-letter queue."""

    def __init__(self, message: str, message_id: str | None = None) -> None:
        self.message_id = message_id
        super().__init__(message)


class LedgerError(InfrastructureError):
    """Raised when the idempotency ledger store is unreachable."""


class DeliveryFailure(NotificationDeliveryError):
    """Base class for failures while processing a consumed message."""


class TransientSendError(DeliveryFailure):
    """Downstream sender failure presumed recoverable (timeout, 5xx, reset)."""

    def __init__(self, reason: str, recipient: str | None = None) -> None:
        self.recipient = recipient
        self.reason = reason
        super().__init__(reason)


class NonRetryableError(DeliveryFailure):
    """Failure that can never succeed on retry; the message is discarded."""


class DecodeError(NonRetryableError, MessagingError):
    """Raised when a message body is not a well-formed envelope."""


class MalformedRecipientError(NonRetryableError):
    """Raised when the envelope recipient is not a scalar address."""

    def __init__(self, recipient: object) -> None:
        self.recipient = recipient
        super().__init__(
            f"recipient must be a scalar, got {type(recipient).__name__}"
        )


def is_retryable(exc: BaseException) -> bool:
    """Return True when a processing failure should go down the retry path."""
    return not isinstance(exc, NonRetryableError)
