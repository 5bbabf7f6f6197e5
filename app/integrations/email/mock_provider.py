from __future__ import annotations

import os

from app.integrations.common import IntegrationResult
from app.integrations.email.base import EmailProvider


class MockEmailProvider(EmailProvider):
    name = "mock"

    def __init__(self):
        self.outbox: list[dict] = []

    def send_email(self, *, to: str, subject: str, body: str, reference: str = "") -> IntegrationResult:
        if "[fail]" in (subject or "").lower() or (os.getenv("MOCK_NOTIFY_FORCE_FAIL") or "").strip() == "1":
            return IntegrationResult(ok=False, code="EMAIL_SEND_FAILED", message="mock forced failure")
        self.outbox.append({"to": to, "subject": subject, "body": body, "reference": reference})
        return IntegrationResult(ok=True, code="OK", message="mock_sent", provider_ref=f"mock-email-{len(self.outbox)}")
