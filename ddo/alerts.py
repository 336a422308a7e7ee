from __future__ import annotations

import smtplib
from email.message import EmailMessage

from .runtime import RunResult
from .settings import settings


def _recipients() -> list[str]:
    return [addr.strip() for addr in (settings.email_to or "").split(",") if addr.strip()]


def alert_run(result: RunResult, summary: str) -> bool:
    """E-mail the summary of a run that needs attention.

    Configured through DDO_ENABLE_EMAIL, DDO_SMTP_HOST / DDO_SMTP_PORT,
    DDO_SMTP_USER / DDO_SMTP_PASSWORD, DDO_EMAIL_FROM and DDO_EMAIL_TO
    (comma separated). Returns False when alerting is off, incomplete, or
    delivery failed; an alert never changes the outcome of a run.
    """
    to = _recipients()
    if not settings.enable_email or not to:
        return False
    if not (settings.smtp_host and settings.smtp_user and settings.smtp_password and settings.email_from):
        return False

    failed = len(result.failed)
    msg = EmailMessage()
    msg["From"] = settings.email_from
    msg["To"] = ", ".join(to)
    msg["Subject"] = f"[ddo] {result.project}: run {result.run_id} {result.status} ({failed} failed)"
    msg.set_content(summary)

    try:
        with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=15) as server:
            server.starttls()
            server.login(settings.smtp_user, settings.smtp_password)
            server.send_message(msg)
    except (smtplib.SMTPException, OSError):
        return False
    return True
