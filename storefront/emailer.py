from __future__ import annotations

import smtplib
from email.message import EmailMessage
from typing import Optional

from . import config


def send_email(*, to_email: str, subject: str, body: str) -> None:
    msg = EmailMessage()
    msg["From"] = config.SMTP_FROM
    msg["To"] = to_email
    msg["Subject"] = subject
    msg.set_content(body)

    with smtplib.SMTP(config.SMTP_HOST, config.SMTP_PORT, timeout=10) as server:
        if config.SMTP_USE_TLS:
            server.starttls()
        if config.SMTP_USERNAME and config.SMTP_PASSWORD:
            server.login(config.SMTP_USERNAME, config.SMTP_PASSWORD)
        server.send_message(msg)


def pick_recipient(customer_email: Optional[str]) -> Optional[str]:
    """Where a customer notification should go; None means nowhere."""
    if config.NOTIFY_FORCE_TO:
        return config.NOTIFY_FORCE_TO
    if customer_email and customer_email.strip():
        return customer_email.strip()
    return config.NOTIFY_FALLBACK_TO or None
