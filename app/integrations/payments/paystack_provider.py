from __future__ import annotations

import hashlib
import hmac

import requests

from app.integrations.payments.base import PaymentsProvider, PaymentVerifyResult, TransferRecipient, TransferResult
from app.utils.money import money_minor_to_major

PAYSTACK_BASE = "https://api.paystack.co"


def verify_signature(raw: bytes, signature: str, secret: str) -> bool:
    if not raw or not signature or not secret:
        return False
    digest = hmac.new(secret.encode("utf-8"), raw, hashlib.sha512).hexdigest()
    return hmac.compare_digest(digest, signature.strip())


class PaystackPaymentsProvider(PaymentsProvider):
    name = "paystack"

    def __init__(self, secret_key: str, base_url: str = PAYSTACK_BASE):
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }

    def _request(self, method: str, path: str, *, payload: dict | None = None, error_code: str) -> dict:
        r = requests.request(method, f"{self.base_url}{path}", headers=self._headers(), json=payload, timeout=25)
        try:
            j = r.json() if r.content else {}
        except ValueError:
            j = {}
        if r.status_code < 200 or r.status_code >= 300 or j.get("status") is not True:
            msg = (j.get("message") or f"HTTP {r.status_code}").strip()
            raise RuntimeError(f"{error_code}:{msg}")
        return j

    def verify(self, reference: str) -> PaymentVerifyResult:
        ref = (reference or "").strip()
        j = self._request("GET", f"/transaction/verify/{ref}", error_code="PAYSTACK_VERIFY_FAILED")
        data = j.get("data") or {}
        metadata = data.get("metadata")
        return PaymentVerifyResult(
            status=(data.get("status") or "").strip().lower(),
            amount=money_minor_to_major(data.get("amount") or 0),
            currency=(data.get("currency") or "KES").strip().upper(),
            reference=(data.get("reference") or ref).strip(),
            customer=((data.get("customer") or {}).get("email") or "").strip(),
            metadata=metadata if isinstance(metadata, dict) else {},
            raw=j,
        )

    def create_transfer_recipient(self, *, name: str, account_number: str, bank_code: str, recipient_type: str, currency: str) -> TransferRecipient:
        payload = {
            "type": recipient_type,
            "name": name,
            "account_number": account_number,
            "bank_code": bank_code,
            "currency": currency,
        }
        j = self._request("POST", "/transferrecipient", payload=payload, error_code="PAYSTACK_RECIPIENT_FAILED")
        data = j.get("data") or {}
        code = (data.get("recipient_code") or "").strip()
        if not code:
            raise RuntimeError("PAYSTACK_RECIPIENT_FAILED:missing recipient_code")
        return TransferRecipient(recipient_code=code, raw=j)

    def initiate_transfer(self, *, amount_minor: int, recipient_code: str, reference: str, reason: str, currency: str) -> TransferResult:
        payload = {
            "source": "balance",
            "amount": int(amount_minor),
            "recipient": recipient_code,
            "reference": reference,
            "reason": reason,
            "currency": currency,
        }
        j = self._request("POST", "/transfer", payload=payload, error_code="PAYSTACK_TRANSFER_FAILED")
        data = j.get("data") or {}
        return TransferResult(
            transfer_code=(data.get("transfer_code") or "").strip(),
            reference=(data.get("reference") or reference).strip(),
            status=(data.get("status") or "pending").strip().lower(),
            raw=j,
        )
