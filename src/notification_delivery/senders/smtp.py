"""SMTP email implementation."""

from __future__ import annotations

import asyncio
import email.message
import email.policy
import json
import logging
from typing import Any

import aiosmtplib

from ..exceptions import TransientSendError
from .base import INotificationSender

logger = logging.getLogger("notification_delivery.senders.smtp")


def render_plain_text(template: str, content: Any) -> str:
    """Flatten structured content into a plain-text body.

    Template selection and HTML rendering belong to the mail provider or a
    dedicated renderer; this only guarantees a readable fallback.
    """
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, dict):
        return "\n".join(f"{key}: {value}" for key, value in content.items())
    return json.dumps(content, default=str)


class SmtpEmailSender(INotificationSender):
    """
    Async SMTP email sender using aiosmtplib.

    Every transport failure is reported as TransientSendError so the
    dispatcher retries it with backoff.
    """

    def __init__(
        self,
        host: str,
        port: int = 587,
        username: str | None = None,
        password: str | None = None,
        use_tls: bool = True,
        timeout: float = 10.0,
        from_email: str | None = None,
        renderer: Any = render_plain_text,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.timeout = timeout
        self.from_email = from_email
        self._render = renderer

    def build_message(
        self,
        recipient: str,
        subject: str | None,
        content: Any,
        template: str,
    ) -> email.message.EmailMessage:
        if not self.from_email:
            raise ValueError("Sender email (from_email) is required.")
        message = email.message.EmailMessage(policy=email.policy.default)
        message["To"] = recipient
        message["From"] = self.from_email
        if subject:
            message["Subject"] = subject
        message["X-Notification-Template"] = template
        message.set_content(self._render(template, content), charset="utf-8")
        return message

    async def send(
        self,
        recipient: str,
        subject: str | None,
        content: Any,
        template: str,
    ) -> None:
        message = self.build_message(recipient, subject, content, template)
        try:
            async with aiosmtplib.SMTP(
                hostname=self.host,
                port=self.port,
                timeout=self.timeout,
                start_tls=self.use_tls,
            ) as smtp:
                if self.username and self.password:
                    await smtp.login(self.username, self.password)
                await smtp.send_message(message)
        except (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError) as e:
            logger.error("Failed to send email to %s: %s", recipient, e)
            raise TransientSendError(str(e) or type(e).__name__, recipient) from e
        logger.info("Email sent to %s via SMTP (template=%s)", recipient, template)
