from __future__ import annotations

from app.integrations.common import IntegrationResult


class EmailProvider:
    name = "unknown"

    def send_email(self, *, to: str, subject: str, body: str, reference: str = "") -> IntegrationResult:
        raise NotImplementedError
