"""Downstream senders: port, SMTP adapter and in-memory fake."""

from __future__ import annotations

from .base import INotificationSender, OutboundNotification
from .memory import InMemorySender, SentMessage
from .smtp import SmtpEmailSender, render_plain_text

__all__ = [
    "INotificationSender",
    "InMemorySender",
    "OutboundNotification",
    "SentMessage",
    "SmtpEmailSender",
    "render_plain_text",
]
