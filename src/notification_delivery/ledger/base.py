"""IIdempotencyLedger: Protocol for processed-message bookkeeping."""

from __future__ import annotations

from enum import Enum
from typing import Protocol, runtime_checkable


class LedgerState(str, Enum):
    """Terminal state recorded for a message id."""

    DELIVERED = "delivered"
    DEAD_LETTERED = "dead_lettered"


class ClaimResult(str, Enum):
    """Outcome of an atomic insert-if-absent on a message id."""

    CLAIMED = "claimed"
    IN_FLIGHT = "in_flight"
    DELIVERED = "delivered"
    DEAD_LETTERED = "dead_lettered"

    @property
    def is_terminal(self) -> bool:
        return self in (ClaimResult.DELIVERED, ClaimResult.DEAD_LETTERED)


@runtime_checkable
class IIdempotencyLedger(Protocol):
    """
    Tracks which message ids reached a terminal state.

    ``claim`` is the atomic check-and-reserve used by the dispatcher so two
    workers cannot both miss the dedup check and both send. ``has`` and
    ``record`` are the read and commit halves. Delivered and dead-lettered
    ids are both terminal: neither is processed again.
    """

    async def has(self, message_id: str) -> bool:
        """Return True if this message id is delivered or dead-lettered."""
        ...

    async def record(
        self, message_id: str, state: LedgerState = LedgerState.DELIVERED
    ) -> None:
        """Mark the message id as terminal."""
        ...

    async def claim(self, message_id: str) -> ClaimResult:
        """Reserve the message id for processing unless already taken."""
        ...

    async def release(self, message_id: str) -> None:
        """Drop an in-flight reservation; terminal records are kept."""
        ...
