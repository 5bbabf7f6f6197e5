from __future__ import annotations

import os

from app.integrations.common import IntegrationResult
from app.integrations.messaging.base import MessagingProvider


class MockMessagingProvider(MessagingProvider):
    name = "mock"

    def __init__(self):
        self.sent: list[dict] = []

    def _force_failure(self, message: str) -> bool:
        msg = (message or "").lower()
        return "[fail]" in msg or (os.getenv("MOCK_NOTIFY_FORCE_FAIL") or "").strip() == "1"

    def send_sms(self, *, to: str, message: str, reference: str = "") -> IntegrationResult:
        if self._force_failure(message):
            return IntegrationResult(ok=False, code="SMS_PROVIDER_DOWN", message="mock forced failure")
        self.sent.append({"to": to, "message": message, "reference": reference})
        return IntegrationResult(
            ok=True,
            code="OK",
            message="mock_sent",
            provider_ref=f"mock-sms-{reference or len(self.sent)}",
            raw={"to": to, "reference": reference},
        )
