"""Downstream sender port and the outbound notification it receives."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from ..envelope import NotificationType

if TYPE_CHECKING:
    from ..envelope import NotificationEnvelope

DEFAULT_TEMPLATE = "default"

# Subject and template per kind; explicit envelope values take precedence.
_TYPE_DEFAULTS: dict[NotificationType, tuple[str | None, str]] = {
    NotificationType.WELCOME: ("Welcome to Our Platform!", "welcome"),
    NotificationType.PASSWORD_RESET: ("Password Reset Request", "password_reset"),
    NotificationType.TODO_REMINDER: ("Todo Reminder", "todo_reminder"),
}


@dataclass(frozen=True)
class OutboundNotification:
    """What a sender gets: recipient, subject, content and template name."""

    recipient: str
    subject: str | None
    content: Any
    template: str

    @classmethod
    def from_envelope(cls, envelope: NotificationEnvelope) -> OutboundNotification:
        subject, template = _TYPE_DEFAULTS.get(envelope.kind, (None, DEFAULT_TEMPLATE))
        return cls(
            recipient=str(envelope.recipient),
            subject=envelope.subject or subject,
            content=envelope.content,
            template=envelope.template or template,
        )


@runtime_checkable
class INotificationSender(Protocol):
    """
    Port for the collaborator that performs the user-visible side effect.

    Raise ``TransientSendError`` for failures worth retrying; any other
    exception is treated the same way by the dispatcher.
    """

    async def send(
        self,
        recipient: str,
        subject: str | None,
        content: Any,
        template: str,
    ) -> None:
        """Deliver one notification."""
        ...
