"""Email delivery for Nudge.

A sender takes an ``OutgoingEmail`` and either hands it to the provider or
raises ``EmailSendError``.  Two implementations:

    SMTPEmailSender      STARTTLS SMTP relay (the transactional provider)
    LogOnlyEmailSender   logs and keeps an outbox; used for dry runs and tests
"""

from __future__ import annotations

import logging
import smtplib
import ssl
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import format_datetime, make_msgid
from typing import Optional, Protocol

from .config import NudgeConfig, SMTPSettings
from .errors import ConfigurationError, EmailSendError

logger = logging.getLogger(__name__)


@dataclass
class OutgoingEmail:
    """A fully rendered message ready for the provider."""

    from_header: str                 # "Acme <reminders@nudge.app>"
    to: list[str]
    subject: str
    html: str
    text: str = ""
    cc: list[str] = field(default_factory=list)
    reply_to: Optional[str] = None

    @property
    def all_recipients(self) -> list[str]:
        return list(self.to) + list(self.cc)


class EmailSender(Protocol):
    def send(self, email: OutgoingEmail) -> str:
        """Deliver the email and return the provider's message id."""
        ...


def build_mime_message(email: OutgoingEmail, message_id: str) -> MIMEMultipart:
    """Build a multipart/alternative MIME message (plain text + HTML)."""
    msg = MIMEMultipart("alternative")
    msg["From"] = email.from_header
    msg["To"] = ", ".join(email.to)
    if email.cc:
        msg["Cc"] = ", ".join(email.cc)
    if email.reply_to:
        msg["Reply-To"] = email.reply_to
    msg["Subject"] = email.subject
    msg["Date"] = format_datetime(datetime.now(timezone.utc))
    msg["Message-ID"] = message_id

    if email.text:
        msg.attach(MIMEText(email.text, "plain", "utf-8"))
    msg.attach(MIMEText(email.html, "html", "utf-8"))
    return msg


class SMTPEmailSender:
    """Sends through an SMTP relay with STARTTLS and login."""

    def __init__(self, settings: SMTPSettings, envelope_from: str) -> None:
        if not settings.host:
            raise ConfigurationError("SMTP host is not configured")
        self.settings = settings
        self.envelope_from = envelope_from

    def send(self, email: OutgoingEmail) -> str:
        if not email.to:
            raise EmailSendError("No recipient email address")

        message_id = make_msgid(domain=self.envelope_from.partition("@")[2] or None)
        msg = build_mime_message(email, message_id)

        try:
            with smtplib.SMTP(
                self.settings.host,
                self.settings.port,
                timeout=self.settings.timeout_seconds,
            ) as server:
                if self.settings.use_tls:
                    server.starttls(context=ssl.create_default_context())
                if self.settings.username:
                    server.login(self.settings.username, self.settings.password)
                server.sendmail(self.envelope_from, email.all_recipients, msg.as_string())
        except smtplib.SMTPAuthenticationError as exc:
            raise EmailSendError("SMTP authentication failed") from exc
        except smtplib.SMTPRecipientsRefused as exc:
            raise EmailSendError(f"Recipients refused: {', '.join(exc.recipients)}") from exc
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("SMTP error sending to %s: %s", ", ".join(email.to), exc)
            raise EmailSendError(f"Send failed: {exc}") from exc

        logger.info("Sent email to %s (%s)", ", ".join(email.to), message_id)
        return message_id


class LogOnlyEmailSender:
    """Records messages instead of sending them."""

    def __init__(self) -> None:
        self.outbox: list[OutgoingEmail] = []

    def send(self, email: OutgoingEmail) -> str:
        if not email.to:
            raise EmailSendError("No recipient email address")
        self.outbox.append(email)
        message_id = f"<logonly-{len(self.outbox)}@nudge.local>"
        logger.info("[dry run] Would send %r to %s", email.subject, ", ".join(email.to))
        return message_id


def build_email_sender(config: NudgeConfig) -> EmailSender:
    """Pick the sender implementation named by ``delivery.backend``."""
    backend = config.delivery.backend
    if backend == "smtp":
        return SMTPEmailSender(config.smtp, envelope_from=config.sender.from_address)
    if backend == "log":
        return LogOnlyEmailSender()
    raise ConfigurationError(f"Unknown email backend: {backend!r}")
