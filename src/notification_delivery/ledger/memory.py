"""InMemoryIdempotencyLedger: process-local ledger for tests and single instances."""

from __future__ import annotations

import time

from .base import ClaimResult, IIdempotencyLedger, LedgerState


class InMemoryIdempotencyLedger(IIdempotencyLedger):
    """Keeps terminal ids in a dict and claims in a dict with expiry.

    Only correct for a single consumer process; entries are lost on restart.
    Check-and-set runs without an ``await`` in between, so it is atomic on
    one event loop.
    """

    def __init__(self, *, claim_ttl: float = 60.0) -> None:
        self._claim_ttl = claim_ttl
        self._terminal: dict[str, LedgerState] = {}
        self._claims: dict[str, float] = {}

    async def has(self, message_id: str) -> bool:
        return message_id in self._terminal

    async def record(
        self, message_id: str, state: LedgerState = LedgerState.DELIVERED
    ) -> None:
        self._terminal[message_id] = state
        self._claims.pop(message_id, None)

    async def claim(self, message_id: str) -> ClaimResult:
        state = self._terminal.get(message_id)
        if state is not None:
            return ClaimResult(state.value)
        now = time.monotonic()
        expires_at = self._claims.get(message_id)
        if expires_at is not None and expires_at > now:
            return ClaimResult.IN_FLIGHT
        self._claims[message_id] = now + self._claim_ttl
        return ClaimResult.CLAIMED

    async def release(self, message_id: str) -> None:
        self._claims.pop(message_id, None)

    def _ids(self, state: LedgerState) -> frozenset[str]:
        return frozenset(m for m, s in self._terminal.items() if s is state)

    @property
    def delivered(self) -> frozenset[str]:
        return self._ids(LedgerState.DELIVERED)

    @property
    def dead_lettered(self) -> frozenset[str]:
        return self._ids(LedgerState.DEAD_LETTERED)

    def clear(self) -> None:
        """Forget everything (for testing)."""
        self._terminal.clear()
        self._claims.clear()
