"""SMTP transport for outgoing notifications."""

import smtplib
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Dict, Optional, Protocol

from orderflow.core_settings import Settings
from orderflow.domain.errors import NotificationError
from shared.core import get_logger

logger = get_logger(__name__)


class NotificationSink(Protocol):
    def send(self, to: str, subject: str, text: str, html: Optional[str] = None) -> Dict[str, str]:
        ...


class SmtpNotificationSink:
    """
    Sends one message per call over a fresh SMTP connection.

    Raises NotificationError on misconfiguration or transport failure;
    callers decide whether that matters.
    """

    def __init__(self, settings: Settings):
        self.settings = settings

    def send(self, to: str, subject: str, text: str, html: Optional[str] = None) -> Dict[str, str]:
        settings = self.settings
        if not settings.MAIL_PASSWORD:
            raise NotificationError("MAIL_PASSWORD is not configured")

        msg = EmailMessage()
        msg["From"] = settings.MAIL_FROM
        msg["To"] = to
        msg["Subject"] = subject
        msg["Reply-To"] = settings.MAIL_REPLY_TO or settings.MAIL_USERNAME or settings.MAIL_FROM
        msg["Message-ID"] = make_msgid()
        msg.set_content(text)
        if html:
            msg.add_alternative(html, subtype="html")

        try:
            with smtplib.SMTP(settings.MAIL_HOST, settings.MAIL_PORT, timeout=settings.MAIL_TIMEOUT_SECONDS) as smtp:
                if settings.MAIL_USE_TLS:
                    smtp.starttls()
                smtp.login(settings.MAIL_USERNAME or "", settings.MAIL_PASSWORD)
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            raise NotificationError(f"Failed to send email to {to}: {e}") from e

        logger.info("Email sent", extra={'extra_fields': {'to': to, 'subject': subject}})
        return {"message_id": msg["Message-ID"]}
