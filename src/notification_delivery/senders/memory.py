"""In-memory sender for test assertions."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from ..exceptions import TransientSendError
from .base import INotificationSender


@dataclass
class SentMessage:
    """Record of a sent message for test assertions."""

    recipient: str
    subject: str | None
    content: Any
    template: str


class InMemorySender(INotificationSender):
    """
    Test double (Fake) that stores messages in a list for assertions.

    ``fail_times`` makes the first N calls raise TransientSendError;
    ``always_fail`` makes every call raise.
    """

    def __init__(self, *, fail_times: int = 0, always_fail: bool = False) -> None:
        self.sent_messages: list[SentMessage] = []
        self.calls = 0
        self._fail_times = fail_times
        self._always_fail = always_fail

    async def send(
        self,
        recipient: str,
        subject: str | None,
        content: Any,
        template: str,
    ) -> None:
        self.calls += 1
        if self._always_fail or self.calls <= self._fail_times:
            raise TransientSendError("simulated provider outage", recipient=recipient)
        self.sent_messages.append(SentMessage(recipient, subject, content, template))

    def assert_sent(self, recipient: str, count: int = 1) -> None:
        """Helper for test assertions."""
        matches = [m for m in self.sent_messages if m.recipient == recipient]
        if len(matches) != count:
            raise AssertionError(
                f"Expected {count} messages to {recipient}, but found {len(matches)}."
            )

    def clear(self) -> None:
        """Clear all sent messages."""
        self.sent_messages.clear()
        self.calls = 0
