from __future__ import annotations

import os
import requests

from app.integrations.common import IntegrationResult
from app.integrations.messaging.base import MessagingProvider


TERMII_BASE = "https://api.ng.termii.com/api"


def _map_termii_error(status: int, message: str) -> str:
    msg = (message or "").lower()
    if status in (401, 403):
        return "SMS_AUTH_FAILED"
    if status == 429:
        return "SMS_RATE_LIMITED"
    if status in (400, 422):
        if "sender" in msg:
            return "SMS_INVALID_SENDER"
        return "SMS_INVALID_RECIPIENT"
    return "SMS_PROVIDER_DOWN"


class TermiiMessagingProvider(MessagingProvider):
    name = "termii"

    def __init__(self, *, api_key: str, sender_id: str, base_url: str = TERMII_BASE):
        self.api_key = api_key
        self.sender_id = sender_id
        self.base_url = base_url.rstrip("/")

    def send_sms(self, *, to: str, message: str, reference: str = "") -> IntegrationResult:
        payload = {
            "to": (to or "").strip().lstrip("+"),
            "from": self.sender_id,
            "sms": message,
            "type": "plain",
            "channel": "generic",
            "api_key": self.api_key,
        }
        try:
            r = requests.post(f"{self.base_url}/sms/send", json=payload, timeout=12)
        except requests.Timeout:
            return IntegrationResult(ok=False, code="SMS_PROVIDER_DOWN", message="timeout")
        except requests.RequestException as e:
            return IntegrationResult(ok=False, code="SMS_PROVIDER_DOWN", message=str(e)[:200])

        try:
            data = r.json() if r.content else {}
        except ValueError:
            data = {"body": r.text[:500]}
        if not isinstance(data, dict):
            data = {"payload": data}
        if 200 <= r.status_code < 300:
            return IntegrationResult(
                ok=True,
                code="OK",
                message="sent",
                provider_ref=str(data.get("message_id") or reference or ""),
                raw=data,
            )
        detail = str(data.get("message") or data.get("error") or "")
        return IntegrationResult(
            ok=False,
            code=_map_termii_error(r.status_code, detail),
            message=(detail or f"http_{r.status_code}")[:200],
            raw=data,
        )


def termii_health() -> dict:
    missing = []
    if not (os.getenv("TERMII_API_KEY") or "").strip():
        missing.append("TERMII_API_KEY")
    if not (os.getenv("TERMII_SENDER_ID") or "").strip():
        missing.append("TERMII_SENDER_ID")
    return {"missing": missing}
