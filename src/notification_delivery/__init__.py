"""Asynchronous notification delivery over a durable broker with retries and a DLQ."""

from __future__ import annotations

from .backoff import BackoffPolicy, RetryPolicyRegistry
from .broker import Delivery, IBroker, InMemoryBroker, QueueDepth
from .codec import EnvelopeCodec, compute_message_id, decode, encode
from .config import DeliverySettings, get_settings
from .dispatcher import DeliveryDispatcher, DispatchResult, Outcome
from .envelope import (
    DelayedUntil,
    DeliveryHeaders,
    Immediate,
    NotificationEnvelope,
    NotificationType,
    RetrySchedule,
)
from .exceptions import (
    DecodeError,
    DeliveryFailure,
    InfrastructureError,
    LedgerError,
    MalformedRecipientError,
    MessagingConnectionError,
    MessagingError,
    NonRetryableError,
    NotificationDeliveryError,
    PublishError,
    TransientSendError,
    ValidationError,
    is_retryable,
)
from .ledger import ClaimResult, IIdempotencyLedger, InMemoryIdempotencyLedger, LedgerState
from .publisher import NotificationPublisher, PublishReceipt
from .senders import INotificationSender, InMemorySender, OutboundNotification
from .worker import DeliveryWorker

__all__ = [
    "BackoffPolicy",
    "ClaimResult",
    "DecodeError",
    "DelayedUntil",
    "Delivery",
    "DeliveryDispatcher",
    "DeliveryFailure",
    "DeliveryHeaders",
    "DeliverySettings",
    "DeliveryWorker",
    "DispatchResult",
    "EnvelopeCodec",
    "IBroker",
    "IIdempotencyLedger",
    "INotificationSender",
    "Immediate",
    "InMemoryBroker",
    "InMemoryIdempotencyLedger",
    "InMemorySender",
    "InfrastructureError",
    "LedgerError",
    "LedgerState",
    "MalformedRecipientError",
    "MessagingConnectionError",
    "MessagingError",
    "NonRetryableError",
    "NotificationDeliveryError",
    "NotificationEnvelope",
    "NotificationPublisher",
    "NotificationType",
    "Outcome",
    "OutboundNotification",
    "PublishError",
    "PublishReceipt",
    "QueueDepth",
    "RetryPolicyRegistry",
    "RetrySchedule",
    "TransientSendError",
    "ValidationError",
    "compute_message_id",
    "decode",
    "encode",
    "get_settings",
    "is_retryable",
]
