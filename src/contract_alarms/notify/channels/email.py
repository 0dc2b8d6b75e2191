"""SMTP email channel implementation."""

from __future__ import annotations

import asyncio
import logging
import smtplib
from email.message import EmailMessage
from typing import TYPE_CHECKING

from contract_alarms.alarms.models import NotificationKind

if TYPE_CHECKING:
    from contract_alarms.config import SmtpSettings
    from contract_alarms.notify.models import Notification

logger = logging.getLogger(__name__)


class EmailChannel:
    """Sends notifications as plain-text email.

    smtplib is blocking, so each send runs in a worker thread.
    """

    kind = NotificationKind.EMAIL

    def __init__(
        self,
        host: str,
        *,
        port: int = 587,
        sender: str = "alarms@localhost",
        username: str | None = None,
        password: str | None = None,
        use_tls: bool = True,
        timeout: float = 20.0,
    ) -> None:
        """Initialize email channel.

        Args:
            host: SMTP server host.
            port: SMTP server port.
            sender: From address.
            username: Login user, if the server requires authentication.
            password: Login password.
            use_tls: Upgrade the connection with STARTTLS.
            timeout: Socket timeout in seconds.
        """
        self.host = host
        self.port = port
        self.sender = sender
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.timeout = timeout
        self.name = "email"

    @classmethod
    def from_settings(cls, settings: SmtpSettings) -> EmailChannel:
        """Build the channel from SMTP settings."""
        if settings.host is None:
            raise ValueError("SMTP_HOST is not configured")
        return cls(
            settings.host,
            port=settings.port,
            sender=settings.sender,
            username=settings.username,
            password=settings.password.get_secret_value() if settings.password else None,
            use_tls=settings.use_tls,
        )

    def build_message(self, notification: Notification) -> EmailMessage:
        """Build the MIME message for a notification."""
        msg = EmailMessage()
        msg["Subject"] = notification.subject
        msg["From"] = self.sender
        msg["To"] = notification.destination
        msg["X-Alarm-Dedup-Key"] = notification.dedup_key
        msg.set_content(notification.plain_text)
        return msg

    def _send_blocking(self, msg: EmailMessage) -> None:
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as client:
            if self.use_tls:
                client.starttls()
            if self.username:
                client.login(self.username, self.password or "")
            client.send_message(msg)

    async def send(self, notification: Notification) -> bool:
        """Send the notification by email.

        Returns:
            True if the SMTP server accepted the message, False otherwise.
        """
        msg = self.build_message(notification)
        try:
            await asyncio.to_thread(self._send_blocking, msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.error("Email to %s failed: %s", notification.destination, e)
            return False
        logger.info("Email delivered %s", notification.dedup_key)
        return True
