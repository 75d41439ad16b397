from __future__ import annotations

import smtplib
from email.message import EmailMessage

from .db import log_event
from .settings import Settings, settings as default_settings


def email_configured(cfg: Settings = default_settings) -> bool:
    """Alerting is on only with BGD_ENABLE_EMAIL=true and a complete SMTP/recipient setup."""
    required = (cfg.smtp_host, cfg.smtp_port, cfg.smtp_user, cfg.smtp_password, cfg.email_from, cfg.email_to)
    return cfg.enable_email and all(required)


def build_message(subject: str, body: str, cfg: Settings = default_settings) -> EmailMessage:
    msg = EmailMessage()
    msg["From"] = cfg.email_from or ""
    msg["To"] = cfg.email_to or ""
    msg["Subject"] = subject
    msg.set_content(body)
    return msg


def send_email(subject: str, body: str, cfg: Settings = default_settings) -> bool:
    """Deliver a deployment alert over SMTP (STARTTLS).

    Returns False when alerting is not configured or delivery failed; a failed
    delivery is recorded as a WARN event and never blocks the deployment.
    """
    if not email_configured(cfg):
        return False
    try:
        with smtplib.SMTP(cfg.smtp_host, cfg.smtp_port, timeout=10) as server:
            server.starttls()
            server.login(cfg.smtp_user, cfg.smtp_password)
            server.send_message(build_message(subject, body, cfg))
        return True
    except (smtplib.SMTPException, OSError) as e:
        log_event("WARN", f"Alert email '{subject}' failed: {type(e).__name__}: {e}")
        return False


def deployment_alert(service: str, attempt_id: str, status: str, detail: str) -> tuple[str, str]:
    icon = "✅" if status == "PROMOTED" else "🚨"
    subject = f"{icon} {status}: {service} ({attempt_id})"
    body = f"Service: {service}\nAttempt: {attempt_id}\nStatus: {status}\nDetail: {detail}"
    return subject, body
