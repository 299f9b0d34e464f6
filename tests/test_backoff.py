"""Tests for BackoffPolicy and RetryPolicyRegistry."""

from __future__ import annotations

import random
from datetime import datetime, timedelta, timezone

import pytest

from notification_delivery.backoff import BackoffPolicy, RetryPolicyRegistry
from notification_delivery.envelope import DelayedUntil, Immediate

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


def test_default_policy_values() -> None:
    policy = BackoffPolicy()
    assert policy.max_retries == 3
    assert policy.base_delay == 1.0
    assert policy.max_delay == 30.0
    assert policy.jitter == 1.0


def test_should_retry_up_to_cap() -> None:
    policy = BackoffPolicy(max_retries=3)
    assert [policy.should_retry(n) for n in range(5)] == [True, True, True, False, False]


def test_zero_retries_never_retries() -> None:
    assert BackoffPolicy(max_retries=0).should_retry(0) is False


def test_base_delay_doubles_and_caps() -> None:
    policy = BackoffPolicy(base_delay=1.0, max_delay=30.0, jitter=0.0)
    assert [policy.base_delay_for(n) for n in range(7)] == [1, 2, 4, 8, 16, 30, 30]


def test_base_delay_is_non_decreasing_for_large_counts() -> None:
    policy = BackoffPolicy()
    delays = [policy.base_delay_for(n) for n in (0, 10, 100, 10_000)]
    assert delays == sorted(delays)
    assert delays[-1] == 30.0


def test_delay_stays_within_jitter_window() -> None:
    policy = BackoffPolicy(jitter=1.0, rng=random.Random(1))
    for n in range(6):
        delay = policy.delay(n)
        base = policy.base_delay_for(n)
        assert base <= delay <= base + 1.0


def test_delay_without_jitter_is_deterministic() -> None:
    policy = BackoffPolicy(jitter=0.0)
    assert policy.delay(2) == 4.0


def test_schedule_delayed() -> None:
    policy = BackoffPolicy(jitter=0.0)
    delay, schedule = policy.schedule(1, NOW)
    assert delay == 2.0
    assert schedule == DelayedUntil(NOW + timedelta(seconds=2))


def test_schedule_immediate_when_not_delayed() -> None:
    policy = BackoffPolicy(jitter=0.0, delayed=False)
    delay, schedule = policy.schedule(1, NOW)
    assert delay == 2.0
    assert isinstance(schedule, Immediate)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"max_retries": -1},
        {"base_delay": -1.0},
        {"jitter": -0.5},
        {"base_delay": 60.0, "max_delay": 30.0},
    ],
)
def test_invalid_policy_rejected(kwargs: dict[str, float]) -> None:
    with pytest.raises(ValueError):
        BackoffPolicy(**kwargs)  # type: ignore[arg-type]


def test_registry_falls_back_to_default() -> None:
    default = BackoffPolicy()
    registry = RetryPolicyRegistry(default=default)
    assert registry.policy_for("welcome") is default
    assert registry.policy_for(None) is default


def test_registry_override_by_exact_type() -> None:
    welcome = BackoffPolicy(max_retries=5)
    registry = RetryPolicyRegistry(overrides={"welcome": welcome})
    assert registry.policy_for("welcome") is welcome
    assert registry.policy_for("password_reset") is registry.default


def test_registry_unknown_type_uses_generic_override() -> None:
    generic = BackoffPolicy(max_retries=1)
    registry = RetryPolicyRegistry()
    registry.register("generic", generic)
    assert registry.policy_for("sms") is generic
