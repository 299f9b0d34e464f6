"""Idempotency ledgers: in-memory and Redis."""

from __future__ import annotations

from .base import ClaimResult, IIdempotencyLedger, LedgerState
from .memory import InMemoryIdempotencyLedger
from .redis_ledger import RedisIdempotencyLedger

__all__ = [
    "ClaimResult",
    "IIdempotencyLedger",
    "InMemoryIdempotencyLedger",
    "LedgerState",
    "RedisIdempotencyLedger",
]
