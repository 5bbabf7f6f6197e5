from __future__ import annotations

from app.integrations.common import IntegrationResult


class MessagingProvider:
    name = "unknown"

    def send_sms(self, *, to: str, message: str, reference: str = "") -> IntegrationResult:
        raise NotImplementedError
