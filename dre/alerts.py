from __future__ import annotations

import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from .db import log_event
from .settings import settings


def _configured() -> bool:
    return settings.enable_email and all(
        [
            settings.smtp_host,
            settings.smtp_port,
            settings.smtp_user,
            settings.smtp_password,
            settings.email_from,
            settings.email_to,
        ]
    )


def send_email(subject: str, body: str) -> bool:
    """Send an operator alert if SMTP is configured.

    Environment variables:
      - DRE_ENABLE_EMAIL=true
      - DRE_SMTP_HOST / DRE_SMTP_PORT
      - DRE_SMTP_USER / DRE_SMTP_PASSWORD
      - DRE_EMAIL_FROM / DRE_EMAIL_TO

    Delivery problems are recorded as events; they never interrupt reconciliation.
    """
    if not _configured():
        return False

    msg = MIMEMultipart()
    msg["From"] = settings.email_from
    msg["To"] = settings.email_to
    msg["Subject"] = subject
    msg.attach(MIMEText(body, "plain"))

    try:
        with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=10) as server:
            server.starttls()
            server.login(settings.smtp_user, settings.smtp_password)
            server.sendmail(settings.email_from, [settings.email_to], msg.as_string())
        return True
    except (smtplib.SMTPException, OSError) as e:
        log_event("WARN", f"Alert email not sent: {type(e).__name__}: {e}")
        return False
