from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal


@dataclass
class PaymentVerifyResult:
    status: str
    amount: Decimal
    currency: str
    reference: str
    customer: str = ""
    metadata: dict | None = None
    raw: dict | None = None

    @property
    def succeeded(self) -> bool:
        return (self.status or "").strip().lower() == "success"


@dataclass
class TransferRecipient:
    recipient_code: str
    raw: dict | None = None


@dataclass
class TransferResult:
    transfer_code: str
    reference: str
    status: str  # pending | otp | success | failed
    raw: dict | None = None


class PaymentsProvider:
    name = "unknown"

    def verify(self, reference: str) -> PaymentVerifyResult:
        raise NotImplementedError

    def create_transfer_recipient(
        self,
        *,
        name: str,
        account_number: str,
        bank_code: str,
        recipient_type: str,
        currency: str,
    ) -> TransferRecipient:
        raise NotImplementedError

    def initiate_transfer(
        self,
        *,
        amount_minor: int,
        recipient_code: str,
        reference: str,
        reason: str,
        currency: str,
    ) -> TransferResult:
        raise NotImplementedError
