from __future__ import annotations

import os
from decimal import Decimal

from app.integrations.payments.base import PaymentsProvider, PaymentVerifyResult, TransferRecipient, TransferResult


class MockPaymentsProvider(PaymentsProvider):
    name = "mock"

    def __init__(self, *, transfer_status: str = "pending", fail_transfers: bool = False):
        self.transfer_status = transfer_status
        self.fail_transfers = fail_transfers
        self.transfers: list[dict] = []

    def verify(self, reference: str) -> PaymentVerifyResult:
        ref = (reference or "").strip()
        status = "failed" if ref.lower().startswith("fail") else "success"
        return PaymentVerifyResult(
            status=status,
            amount=Decimal("0.00"),
            currency="KES",
            reference=ref,
            customer="mock",
            metadata={},
            raw={"reference": ref, "provider": self.name},
        )

    def create_transfer_recipient(self, *, name: str, account_number: str, bank_code: str, recipient_type: str, currency: str) -> TransferRecipient:
        return TransferRecipient(recipient_code=f"RCP_mock_{account_number[-4:]}", raw={"name": name})

    def initiate_transfer(self, *, amount_minor: int, recipient_code: str, reference: str, reason: str, currency: str) -> TransferResult:
        forced = self.fail_transfers or (os.getenv("MOCK_TRANSFER_FORCE_FAIL") or "").strip() == "1"
        if forced:
            raise RuntimeError("MOCK_TRANSFER_FAILED:forced failure")
        self.transfers.append(
            {
                "amount_minor": int(amount_minor),
                "recipient_code": recipient_code,
                "reference": reference,
                "reason": reason,
                "currency": currency,
            }
        )
        return TransferResult(
            transfer_code=f"TRF_mock_{reference}",
            reference=reference,
            status=self.transfer_status,
            raw={"provider": self.name},
        )
