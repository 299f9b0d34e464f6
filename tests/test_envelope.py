"""Tests for NotificationEnvelope and DeliveryHeaders."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError as PydanticValidationError

from notification_delivery.envelope import (
    HEADER_MESSAGE_ID,
    HEADER_NEXT_RETRY_AT,
    HEADER_ORIGINAL_TIMESTAMP,
    HEADER_RETRY_COUNT,
    DelayedUntil,
    DeliveryHeaders,
    NotificationEnvelope,
    NotificationType,
)

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


def test_unknown_type_resolves_to_generic() -> None:
    assert NotificationType.resolve("sms") is NotificationType.GENERIC
    assert NotificationType.resolve(None) is NotificationType.GENERIC
    assert NotificationType.resolve("welcome") is NotificationType.WELCOME


def test_envelope_is_frozen() -> None:
    env = NotificationEnvelope(type="email", recipient="a@x.io")
    with pytest.raises(PydanticValidationError):
        env.recipient = "b@x.io"  # type: ignore[misc]


def test_envelope_accepts_alias_and_field_names() -> None:
    by_alias = NotificationEnvelope.model_validate({"userId": "u1", "todoId": 2})
    by_name = NotificationEnvelope(user_id="u1", todo_id=2)
    assert by_alias == by_name


@pytest.mark.parametrize(
    ("recipient", "expected"),
    [
        ("a@x.io", True),
        (42, True),
        ("", False),
        (None, False),
        (True, False),
        ({"email": "a@x.io"}, False),
        (["a@x.io"], False),
    ],
)
def test_recipient_is_scalar(recipient: object, expected: bool) -> None:
    env = NotificationEnvelope(type="email", recipient=recipient)
    assert env.recipient_is_scalar() is expected


def test_initial_headers() -> None:
    headers = DeliveryHeaders.initial("m1", NOW)
    assert headers.to_transport() == {
        HEADER_MESSAGE_ID: "m1",
        HEADER_RETRY_COUNT: 0,
        HEADER_ORIGINAL_TIMESTAMP: NOW.isoformat(),
    }


def test_from_transport_is_lenient() -> None:
    headers = DeliveryHeaders.from_transport(
        {HEADER_RETRY_COUNT: "garbage", HEADER_MESSAGE_ID: b"m2"}
    )
    assert headers.retry_count == 0
    assert headers.message_id == "m2"


def test_from_transport_clamps_negative_count_and_uses_fallback_id() -> None:
    headers = DeliveryHeaders.from_transport({HEADER_RETRY_COUNT: -3}, "fallback")
    assert headers.retry_count == 0
    assert headers.message_id == "fallback"


def test_from_transport_without_headers() -> None:
    headers = DeliveryHeaders.from_transport(None)
    assert headers.message_id is None
    assert headers.retry_count == 0


def test_for_retry_increments_and_stamps_next_attempt() -> None:
    headers = DeliveryHeaders.initial("m1", NOW)
    retry = headers.for_retry(NOW + timedelta(seconds=2))
    assert retry.retry_count == 1
    assert retry.message_id == "m1"
    assert retry.original_timestamp == NOW.isoformat()
    assert retry.to_transport()[HEADER_NEXT_RETRY_AT] == (NOW + timedelta(seconds=2)).isoformat()
    assert headers.retry_count == 0


def test_delayed_until_never_negative() -> None:
    schedule = DelayedUntil(NOW)
    assert schedule.delay_seconds(NOW + timedelta(seconds=5)) == 0.0
    assert schedule.delay_seconds(NOW - timedelta(seconds=5)) == 5.0
