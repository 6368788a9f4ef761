from __future__ import annotations

import asyncio
from email.message import EmailMessage
import logging
import smtplib
import ssl
from typing import Sequence

import certifi

from relay_monitor.config import RelayConfig
from relay_monitor.models import utc_now

LOGGER = logging.getLogger("relay_monitor")


def run_label() -> str:
    return utc_now().strftime("%Y-%m-%d %H:%M:%S UTC")


class LogNotifier:
    """Used when no SMTP relay is configured."""

    def __init__(self, label: str | None = None) -> None:
        self.label = label or run_label()

    async def notify(self, subject: str, body: str) -> None:
        LOGGER.warning("notify [%s] %s\n%s", self.label, subject, body)


class MailNotifier:
    def __init__(
        self,
        *,
        host: str,
        port: int,
        username: str,
        password: str,
        sender: str,
        recipients: Sequence[str],
        label: str | None = None,
        timeout_seconds: float = 15.0,
    ) -> None:
        self.host = host
        self.port = int(port)
        self.username = username
        self.password = password
        self.sender = sender
        self.recipients = tuple(recipients)
        self.label = label or run_label()
        self.timeout_seconds = timeout_seconds
        self.sent = 0
        self.failed = 0

    def build_message(self, subject: str, body: str) -> EmailMessage:
        message = EmailMessage()
        message["Subject"] = f"{self.label}: {subject}"
        message["From"] = self.sender
        message["To"] = ", ".join(self.recipients)
        message.set_content(body)
        return message

    def _send(self, message: EmailMessage) -> None:
        context = ssl.create_default_context(cafile=certifi.where())
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout_seconds) as smtp:
            smtp.starttls(context=context)
            if self.username:
                smtp.login(self.username, self.password)
            smtp.send_message(message)

    async def notify(self, subject: str, body: str) -> None:
        message = self.build_message(subject, body)
        try:
            await asyncio.to_thread(self._send, message)
        except (smtplib.SMTPException, OSError) as exc:
            self.failed += 1
            LOGGER.error("mail notification failed subject=%r error=%s", subject, exc)
            return
        self.sent += 1
        LOGGER.info("mail notification sent subject=%r recipients=%d", subject, len(self.recipients))


def build_notifier(config: RelayConfig) -> LogNotifier | MailNotifier:
    label = run_label()
    if not config.mail_enabled:
        return LogNotifier(label)
    return MailNotifier(
        host=config.smtp_host,
        port=config.smtp_port,
        username=config.smtp_username,
        password=config.smtp_password,
        sender=config.mail_from,
        recipients=config.mail_to,
        label=label,
    )
