"""Outgoing course email."""

from __future__ import annotations

import logging
import smtplib
from email.message import EmailMessage
from typing import Mapping, Optional, Sequence

from course_env import CourseEnvironment

LOGGER = logging.getLogger("hwd.mail")


class MailError(RuntimeError):
    """Raised when a message could not be handed to the mail server."""


def build_message(
    sender: str,
    recipients: Sequence[str],
    subject: str,
    body: str,
    headers: Optional[Mapping[str, str]] = None,
) -> EmailMessage:
    message = EmailMessage()
    message["From"] = sender
    message["To"] = ", ".join(recipients)
    message["Subject"] = subject
    for name, value in (headers or {}).items():
        if value is not None:
            message[name] = str(value)
    message.set_content(body)
    return message


def send_email(ce: CourseEnvironment, message: EmailMessage) -> None:
    """Send ``message`` through the course SMTP server or raise :class:`MailError`.

    ``ce.set_return_path`` becomes the envelope sender when set, so bounces go
    there rather than to the ``From`` address.
    """

    if not ce.smtp_server:
        raise MailError("No SMTP server configured")
    recipients = [addr.strip() for addr in (message["To"] or "").split(",") if addr.strip()]
    if not recipients:
        raise MailError("Message has no recipients")
    try:
        with smtplib.SMTP(ce.smtp_server, ce.smtp_port, timeout=30) as smtp:
            smtp.send_message(message, from_addr=ce.set_return_path or None, to_addrs=recipients)
    except (smtplib.SMTPException, OSError) as exc:
        raise MailError(str(exc)) from exc
    LOGGER.debug("Sent '%s' to %s recipient(s)", message["Subject"], len(recipients))
