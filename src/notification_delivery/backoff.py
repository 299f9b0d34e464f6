"""BackoffPolicy: exponential backoff, retry cap and additive jitter."""

from __future__ import annotations

import random
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from .envelope import DelayedUntil, Immediate, NotificationType, utcnow

if TYPE_CHECKING:
    from collections.abc import Mapping

    from .envelope import RetrySchedule


class BackoffPolicy:
    """Configurable retry with exponential backoff and jitter.

    ``delay(n) = min(base_delay * 2**n, max_delay) + uniform(0, jitter)``
    where ``n`` is the number of retries already performed.
    """

    def __init__(
        self,
        *,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        jitter: float = 1.0,
        delayed: bool = True,
        rng: random.Random | None = None,
    ) -> None:
        """Configure retry behavior.

        Args:
            max_retries: Requeues allowed before a message is dead-lettered.
            base_delay: Delay in seconds before the first retry.
            max_delay: Cap in seconds on the exponential component.
            jitter: Width in seconds of the uniform jitter window.
            delayed: If False, retries are scheduled immediately and the
                delay is advisory only.
            rng: Random source for the jitter term.
        """
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if base_delay < 0 or max_delay < 0 or jitter < 0:
            raise ValueError("base_delay, max_delay and jitter must be >= 0")
        if base_delay > max_delay:
            raise ValueError("base_delay must be <= max_delay")
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self.delayed = delayed
        self._rng = rng or random.Random()  # noqa: S311

    def should_retry(self, retry_count: int) -> bool:
        """Return True if another requeue is allowed."""
        return retry_count < self.max_retries

    def base_delay_for(self, retry_count: int) -> float:
        """Deterministic part of the delay, non-decreasing and capped."""
        if retry_count < 0:
            return 0.0
        # Bound the exponent so huge counters cannot overflow the float.
        exponent = min(retry_count, 64)
        return float(min(self.base_delay * (2**exponent), self.max_delay))

    def delay(self, retry_count: int) -> float:
        """Return the delay in seconds for the given retry count."""
        delay = self.base_delay_for(retry_count)
        if self.jitter:
            delay += self._rng.uniform(0.0, self.jitter)
        return delay

    def schedule(
        self, retry_count: int, now: datetime | None = None
    ) -> tuple[float, RetrySchedule]:
        """Return the delay and the retry schedule for the next attempt."""
        delay = self.delay(retry_count)
        if not self.delayed or delay <= 0:
            return delay, Immediate()
        return delay, DelayedUntil((now or utcnow()) + timedelta(seconds=delay))


class RetryPolicyRegistry:
    """Resolves the backoff policy for a notification type."""

    def __init__(
        self,
        default: BackoffPolicy | None = None,
        overrides: Mapping[str, BackoffPolicy] | None = None,
    ) -> None:
        self._default = default or BackoffPolicy()
        self._overrides = dict(overrides or {})

    @property
    def default(self) -> BackoffPolicy:
        return self._default

    def register(self, notification_type: str, policy: BackoffPolicy) -> None:
        self._overrides[notification_type] = policy

    def policy_for(self, notification_type: str | None) -> BackoffPolicy:
        if notification_type and notification_type in self._overrides:
            return self._overrides[notification_type]
        kind = NotificationType.resolve(notification_type).value
        return self._overrides.get(kind, self._default)
