"""
Outbound mail transports.

Two transports share the ``send(MailMessage)`` contract:

    SmtpMailer     stdlib smtplib with STARTTLS, run in the default executor
    WebhookMailer  JSON POST to an email-relay webhook via aiohttp

Both raise MailSendError on any delivery failure and never retry; the
caller records the outcome and the reminder interval governs the next try.

``build_mailer(settings)`` returns the transport the saved settings
describe, or None when mail is not configured.
"""

from __future__ import annotations

import asyncio
import email.mime.multipart
import email.mime.text
import email.utils
import logging
import smtplib
from dataclasses import dataclass, field
from typing import Optional

import aiohttp

from subscription_billing import config
from subscription_billing.errors import MailSendError
from subscription_billing.models import EmailSettings

logger = logging.getLogger("mailer")

WEBHOOK_TIMEOUT = 30
SMTP_TIMEOUT = 30


@dataclass
class MailMessage:
    to: str
    subject: str
    html: str
    text: str = ""
    headers: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "to": self.to,
            "subject": self.subject,
            "html": self.html,
            "text": self.text,
            "headers": dict(self.headers),
        }


class Mailer:
    """Base transport.  Subclasses implement ``send``."""

    name = "mailer"

    async def send(self, message: MailMessage) -> None:
        raise NotImplementedError


# ---------------------------------------------------------------------------
# SMTP
# ---------------------------------------------------------------------------

class SmtpMailer(Mailer):
    name = "smtp"

    def __init__(
        self,
        host: str,
        port: int,
        user: str,
        password: str,
        from_name: str = config.MAIL_FROM_NAME,
    ) -> None:
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.from_name = from_name

    def _build(self, message: MailMessage) -> email.mime.multipart.MIMEMultipart:
        msg = email.mime.multipart.MIMEMultipart("alternative")
        msg["Subject"] = message.subject
        msg["From"] = email.utils.formataddr((self.from_name, self.user))
        msg["To"] = message.to
        for key, value in message.headers.items():
            msg[key] = value
        if message.text:
            msg.attach(email.mime.text.MIMEText(message.text, "plain", "utf-8"))
        msg.attach(email.mime.text.MIMEText(message.html, "html", "utf-8"))
        return msg

    def _send_sync(self, message: MailMessage) -> None:
        msg = self._build(message)
        try:
            with smtplib.SMTP(self.host, self.port, timeout=SMTP_TIMEOUT) as server:
                server.ehlo()
                server.starttls()
                server.ehlo()
                server.login(self.user, self.password)
                server.sendmail(self.user, [message.to], msg.as_string())
        except (smtplib.SMTPException, OSError) as exc:
            raise MailSendError(message.to, str(exc)) from exc

    async def send(self, message: MailMessage) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._send_sync, message)
        logger.debug("SMTP delivery: success to %s", message.to)


# ---------------------------------------------------------------------------
# Webhook
# ---------------------------------------------------------------------------

class WebhookMailer(Mailer):
    name = "webhook"

    def __init__(
        self,
        url: str,
        from_name: str = config.MAIL_FROM_NAME,
        timeout: int = WEBHOOK_TIMEOUT,
    ) -> None:
        self.url = url
        self.from_name = from_name
        self.timeout = timeout

    async def send(self, message: MailMessage) -> None:
        payload = message.to_dict()
        payload["from_name"] = self.from_name
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(self.url, json=payload) as resp:
                    if not 200 <= resp.status < 300:
                        body = await resp.text()
                        raise MailSendError(
                            message.to, f"HTTP {resp.status}: {body[:200]}",
                        )
        except asyncio.TimeoutError as exc:
            raise MailSendError(
                message.to, f"Request timed out after {self.timeout}s",
            ) from exc
        except aiohttp.ClientError as exc:
            raise MailSendError(message.to, f"Connection error: {exc}") from exc
        logger.debug("Webhook delivery: success to %s", message.to)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def build_mailer(settings: EmailSettings) -> Optional[Mailer]:
    """Pick a transport from the settings, or None when mail is not configured."""
    if settings.webhook_url:
        return WebhookMailer(settings.webhook_url, from_name=settings.from_name)

    if not (settings.email_user and settings.email_password):
        return None

    host, port = settings.smtp_host, settings.smtp_port
    if not host:
        known = config.SMTP_SERVICES.get(settings.email_service.lower())
        if known is None:
            logger.warning(
                "Unknown email service %r and no SMTP host configured",
                settings.email_service,
            )
            return None
        host, port = known
    return SmtpMailer(
        host, port, settings.email_user, settings.email_password,
        from_name=settings.from_name,
    )
