from __future__ import annotations

import os

from app.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError, integration_mode
from app.integrations.email.base import EmailProvider
from app.integrations.email.mock_provider import MockEmailProvider
from app.integrations.email.smtp_provider import SmtpEmailProvider


def build_email_provider(settings) -> EmailProvider:
    mode = integration_mode(settings)
    if mode == "disabled" or not bool(getattr(settings, "email_enabled", False)):
        raise IntegrationDisabledError("INTEGRATION_DISABLED:email")
    if mode == "sandbox":
        return MockEmailProvider()

    host = (os.getenv("SMTP_HOST") or "").strip()
    user = (os.getenv("SMTP_USER") or "").strip()
    sender = (os.getenv("SMTP_FROM") or user).strip()
    missing = []
    if not host:
        missing.append("SMTP_HOST")
    if not sender:
        missing.append("SMTP_FROM")
    if missing:
        raise IntegrationMisconfiguredError(f"INTEGRATION_MISCONFIGURED:missing {', '.join(missing)}")
    try:
        port = int((os.getenv("SMTP_PORT") or "587").strip() or 587)
    except ValueError:
        raise IntegrationMisconfiguredError("INTEGRATION_MISCONFIGURED:SMTP_PORT")
    return SmtpEmailProvider(
        host=host,
        port=port,
        sender=sender,
        username=user,
        password=(os.getenv("SMTP_PASS") or "").strip(),
        reply_to=(os.getenv("SMTP_REPLY_TO") or "").strip(),
    )
