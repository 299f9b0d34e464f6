"""Hooks around ``publisher.publish.<queue>`` and ``dispatcher.process``.

A hook receives the operation name, a dict of attributes (queue, message
id, notification type) and a zero-argument callable that runs the rest of
the chain. Tracing or timing integrations register here instead of being
imported by the publisher and dispatcher.
"""

from __future__ import annotations

import functools
from dataclasses import dataclass, field
from fnmatch import fnmatchcase
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    Handler = Callable[[], Awaitable[Any]]


@runtime_checkable
class DeliveryHook(Protocol):
    async def __call__(
        self, operation: str, attributes: dict[str, Any], next_handler: Handler
    ) -> Any: ...


@dataclass
class _Registered:
    hook: DeliveryHook
    priority: int
    patterns: tuple[str, ...] = field(default_factory=tuple)

    def applies_to(self, operation: str) -> bool:
        return not self.patterns or any(fnmatchcase(operation, p) for p in self.patterns)


class HookRegistry:
    """Ordered hook chain; the lowest priority wraps everything else."""

    def __init__(self) -> None:
        self._hooks: list[_Registered] = []

    def register(
        self,
        hook: DeliveryHook,
        *,
        priority: int = 0,
        operations: list[str] | None = None,
    ) -> None:
        """Add *hook*, optionally only for operations matching glob patterns."""
        self._hooks.append(_Registered(hook, priority, tuple(operations or ())))
        self._hooks.sort(key=lambda r: r.priority)

    async def execute_all(
        self, operation: str, attributes: dict[str, Any], next_handler: Handler
    ) -> Any:
        handler = next_handler
        # Build inside-out so the first applicable hook runs outermost.
        for registered in reversed(self._hooks):
            if registered.applies_to(operation):
                handler = functools.partial(
                    registered.hook, operation, attributes, handler
                )
        return await handler()

    def clear(self) -> None:
        self._hooks.clear()


_registry = HookRegistry()


def get_hook_registry() -> HookRegistry:
    return _registry
