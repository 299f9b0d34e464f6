"""Shared fixtures: in-memory broker, sender and ledger."""

from __future__ import annotations

import random
from collections.abc import Iterator
from datetime import datetime, timezone

import pytest

from notification_delivery.backoff import BackoffPolicy, RetryPolicyRegistry
from notification_delivery.broker.memory import InMemoryBroker
from notification_delivery.correlation import set_correlation_id
from notification_delivery.dispatcher import DeliveryDispatcher
from notification_delivery.instrumentation import get_hook_registry
from notification_delivery.ledger.memory import InMemoryIdempotencyLedger
from notification_delivery.publisher import NotificationPublisher
from notification_delivery.senders.memory import InMemorySender

FIXED_NOW = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def _reset_context() -> Iterator[None]:
    yield
    get_hook_registry().clear()
    set_correlation_id(None)


@pytest.fixture
def broker() -> InMemoryBroker:
    return InMemoryBroker()


@pytest.fixture
def sender() -> InMemorySender:
    return InMemorySender()


@pytest.fixture
def ledger() -> InMemoryIdempotencyLedger:
    return InMemoryIdempotencyLedger()


@pytest.fixture
def policy() -> BackoffPolicy:
    return BackoffPolicy(
        max_retries=3, base_delay=1.0, max_delay=30.0, jitter=0.0, rng=random.Random(7)
    )


@pytest.fixture
def publisher(broker: InMemoryBroker) -> NotificationPublisher:
    return NotificationPublisher(broker)


def make_dispatcher(
    broker: InMemoryBroker,
    sender: object,
    ledger: InMemoryIdempotencyLedger,
    policy: BackoffPolicy | None = None,
    **kwargs: object,
) -> DeliveryDispatcher:
    kwargs.setdefault("defer_delay", 0)
    kwargs.setdefault("clock", lambda: FIXED_NOW)
    return DeliveryDispatcher(
        broker,
        sender,  # type: ignore[arg-type]
        ledger,
        retry_policies=RetryPolicyRegistry(default=policy) if policy else None,
        **kwargs,  # type: ignore[arg-type]
    )


@pytest.fixture
def dispatcher(
    broker: InMemoryBroker,
    sender: InMemorySender,
    ledger: InMemoryIdempotencyLedger,
    policy: BackoffPolicy,
) -> DeliveryDispatcher:
    return make_dispatcher(broker, sender, ledger, policy)
