"""RedisIdempotencyLedger: ledger shared by every consumer instance."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from redis.exceptions import RedisError

from ..exceptions import LedgerError
from .base import ClaimResult, IIdempotencyLedger, LedgerState

if TYPE_CHECKING:
    from redis.asyncio import Redis

logger = logging.getLogger("notification_delivery.ledger.redis")

_IN_FLIGHT = "in_flight"
_TERMINAL = {state.value for state in LedgerState}

# Compare-and-delete so a late release never drops a delivered record.
_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


def _text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


class RedisIdempotencyLedger(IIdempotencyLedger):
    """
    Ledger backed by Redis string keys.

    - ``claim`` is ``SET key in_flight NX EX claim_ttl``: a single atomic
      insert-if-absent, so concurrent workers cannot both win.
    - ``record`` overwrites the key with ``delivered`` or ``dead_lettered``
      for ``ttl`` seconds.
    - An abandoned claim (crashed worker) expires after ``claim_ttl``.
    """

    def __init__(
        self,
        redis_client: Redis,  # type: ignore[type-arg]
        *,
        key_prefix: str = "notify:processed:",
        ttl: int = 7 * 86400,
        claim_ttl: int = 60,
    ) -> None:
        """
        Args:
            redis_client: An initialized redis.asyncio.Redis client.
            key_prefix: Prefix for ledger keys.
            ttl: Retention of delivered records in seconds.
            claim_ttl: Lifetime of an in-flight claim in seconds.
        """
        self._redis = redis_client
        self._key_prefix = key_prefix
        self._ttl = ttl
        self._claim_ttl = claim_ttl

    def _key(self, message_id: str) -> str:
        return f"{self._key_prefix}{message_id}"

    async def has(self, message_id: str) -> bool:
        try:
            value = await self._redis.get(self._key(message_id))
        except RedisError as e:
            raise LedgerError(f"ledger lookup failed: {e}") from e
        return _text(value) in _TERMINAL

    async def record(
        self, message_id: str, state: LedgerState = LedgerState.DELIVERED
    ) -> None:
        try:
            await self._redis.set(self._key(message_id), state.value, ex=self._ttl)
        except RedisError as e:
            raise LedgerError(f"ledger record failed: {e}") from e

    async def claim(self, message_id: str) -> ClaimResult:
        key = self._key(message_id)
        try:
            acquired = await self._redis.set(
                key, _IN_FLIGHT, nx=True, ex=self._claim_ttl
            )
            if acquired:
                return ClaimResult.CLAIMED
            current = _text(await self._redis.get(key))
        except RedisError as e:
            raise LedgerError(f"ledger claim failed: {e}") from e
        if current in _TERMINAL:
            return ClaimResult(current)
        if current is None:
            # Expired between SET NX and GET; the next delivery can claim it.
            logger.debug("Claim for %s vanished during lookup", message_id)
        return ClaimResult.IN_FLIGHT

    async def release(self, message_id: str) -> None:
        try:
            await self._redis.eval(
                _RELEASE_SCRIPT, 1, self._key(message_id), _IN_FLIGHT
            )
        except RedisError as e:
            # The claim still expires on its own.
            logger.warning("Ledger release failed for %s: %s", message_id, e)

    async def health_check(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except RedisError:
            return False

    async def close(self) -> None:
        await self._redis.aclose()
