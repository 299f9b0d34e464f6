"""Tests for DeliverySettings."""

from __future__ import annotations

import pytest

from notification_delivery.config import DeliverySettings, RetryOverride


def test_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir("/")
    settings = DeliverySettings()
    assert settings.queue_name == "notification_queue"
    assert settings.dlq_name == "notification_dlq"
    assert (settings.max_retries, settings.base_delay, settings.max_delay) == (3, 1.0, 30.0)
    assert settings.redis_url == ""
    assert settings.http_port == 3006


def test_env_prefix(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("NOTIFY_QUEUE_NAME", "jobs")
    monkeypatch.setenv("NOTIFY_MAX_RETRIES", "5")
    monkeypatch.setenv("NOTIFY_DEAD_LETTER_MALFORMED", "true")
    settings = DeliverySettings()
    assert settings.queue_name == "jobs"
    assert settings.max_retries == 5
    assert settings.dead_letter_malformed is True


def test_retry_overrides_from_json_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv(
        "NOTIFY_RETRY_OVERRIDES", '{"password_reset": {"max_retries": 6, "base_delay": 0.5}}'
    )
    settings = DeliverySettings()
    registry = settings.retry_policies()

    reset = registry.policy_for("password_reset")
    assert (reset.max_retries, reset.base_delay, reset.max_delay) == (6, 0.5, 30.0)
    assert registry.policy_for("welcome") is registry.default


def test_backoff_policy_inherits_unset_fields() -> None:
    settings = DeliverySettings(jitter=0.0, delayed_retry=False)
    policy = settings.backoff_policy(RetryOverride(max_delay=10.0))
    assert policy.max_delay == 10.0
    assert policy.max_retries == settings.max_retries
    assert policy.jitter == 0.0
    assert policy.delayed is False
