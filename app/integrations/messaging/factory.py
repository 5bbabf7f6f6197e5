from __future__ import annotations

import os

from app.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError, integration_mode
from app.integrations.messaging.base import MessagingProvider
from app.integrations.messaging.mock_provider import MockMessagingProvider
from app.integrations.messaging.termii_provider import TermiiMessagingProvider, termii_health


def build_messaging_provider(settings) -> MessagingProvider:
    mode = integration_mode(settings)
    if mode == "disabled":
        raise IntegrationDisabledError("INTEGRATION_DISABLED:sms")
    if not bool(getattr(settings, "termii_enabled_sms", False)):
        raise IntegrationDisabledError("INTEGRATION_DISABLED:sms")

    # Sandbox never leaves the process.
    if mode == "sandbox":
        return MockMessagingProvider()

    api_key = (os.getenv("TERMII_API_KEY") or "").strip()
    sender = (os.getenv("TERMII_SENDER_ID") or "").strip()
    missing = termii_health().get("missing", [])
    if missing:
        raise IntegrationMisconfiguredError(f"INTEGRATION_MISCONFIGURED:missing {', '.join(missing)}")
    return TermiiMessagingProvider(api_key=api_key, sender_id=sender)


def messaging_health(settings) -> dict:
    mode = integration_mode(settings)
    enabled = bool(getattr(settings, "termii_enabled_sms", False))
    missing = termii_health().get("missing", [])
    if mode == "disabled" or not enabled:
        status = "disabled"
    elif mode == "live" and missing:
        status = "misconfigured"
    else:
        status = "configured"
    return {"status": status, "mode": mode, "sms_enabled": enabled, "missing": missing}
