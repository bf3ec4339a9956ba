from __future__ import annotations

import logging
import smtplib
from email.message import EmailMessage
from typing import Optional

from .config import settings

logger = logging.getLogger(__name__)


def build_message(to_email: str, subject: str, html_body: str, text_body: Optional[str] = None) -> EmailMessage:
    message = EmailMessage()
    message["From"] = settings.smtp_from
    message["To"] = to_email
    message["Subject"] = subject
    message.set_content(text_body or "")
    message.add_alternative(html_body, subtype="html")
    return message


def send_mail(to_email: str, subject: str, html_body: str, text_body: Optional[str] = None) -> None:
    """Deliver a message through the configured SMTP relay.

    Without ``SMTP_HOST`` the message is only logged, which is what local
    development and the test-suite rely on.
    """
    message = build_message(to_email, subject, html_body, text_body)
    if not settings.smtp_host:
        logger.info("SMTP_HOST not configured; skipping delivery of %r to %s", subject, to_email)
        return

    if settings.smtp_port == 465:
        server: smtplib.SMTP = smtplib.SMTP_SSL(settings.smtp_host, settings.smtp_port, timeout=30)
    else:
        server = smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=30)
    with server:
        if settings.smtp_port != 465:
            server.starttls()
        if settings.smtp_user and settings.smtp_password:
            server.login(settings.smtp_user, settings.smtp_password)
        server.send_message(message)
    logger.info("Sent %r to %s", subject, to_email)
