from __future__ import annotations

import os
import time
import unittest
from decimal import Decimal

from app import create_app
from app.errors import ExternalServiceError, InsufficientBalance, InvalidTransition, MissingBankDetails, ValidationError
from app.extensions import db
from app.integrations.payments.mock_provider import MockPaymentsProvider
from app.models import Notification, PayoutRequest, User, Vendor, VendorEarning
from app.services.commission_service import set_platform_fee_percentage
from app.services.order_lifecycle_service import create_order_from_payment, transition_order
from app.services.payout_service import (
    approve_payout,
    reject_payout,
    request_payout,
    settle_transfer,
    vendor_earnings_summary,
)
from app.services.reconciliation_service import persist_report, recompute_vendor_balances


def _money(value) -> Decimal:
    return Decimal(str(value or 0)).quantize(Decimal("0.01"))


class _InMemoryAppMixin:
    @classmethod
    def setUpClass(cls):
        cls._prev_env = {
            key: os.getenv(key)
            for key in ("SQLALCHEMY_DATABASE_URI", "ADMIN_NOTIFY_EMAIL", "NOTIFY_DISPATCH_MODE", "MOCK_TRANSFER_FORCE_FAIL")
        }
        os.environ["SQLALCHEMY_DATABASE_URI"] = "sqlite:///:memory:"
        os.environ["ADMIN_NOTIFY_EMAIL"] = "finance@buylock.test"
        os.environ.pop("NOTIFY_DISPATCH_MODE", None)
        os.environ.pop("MOCK_TRANSFER_FORCE_FAIL", None)
        cls.app = create_app()
        cls.app.config.update(TESTING=True)
        with cls.app.app_context():
            db.create_all()
            set_platform_fee_percentage("20")
            db.session.commit()

    @classmethod
    def tearDownClass(cls):
        for key, value in cls._prev_env.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value

    def _admin(self) -> User:
        admin = User.query.filter_by(role="admin").first()
        if admin is None:
            admin = User(name="Finance Admin", email=f"admin-{time.time_ns()}@buylock.test", role="admin")
            admin.set_password("Passw0rd!")
            db.session.add(admin)
            db.session.commit()
        return admin

    def _vendor(self, *, available: str = "0", with_bank: bool = True) -> Vendor:
        suffix = int(time.time_ns())
        owner = User(name="Payout Vendor", email=f"payout-vendor-{suffix}@buylock.test", role="vendor")
        owner.set_password("Passw0rd!")
        db.session.add(owner)
        db.session.flush()
        vendor = Vendor(
            user_id=int(owner.id),
            business_name=f"Payout Shop {suffix}",
            phone=f"+2547{suffix % 100000000:08d}",
            total_earnings=Decimal(available),
            available_balance=Decimal(available),
        )
        if with_bank:
            vendor.account_number = "0712345678"
            vendor.account_name = "Payout Owner"
            vendor.bank_name = "M-Pesa"
            vendor.bank_code = "MPESA"
        db.session.add(vendor)
        db.session.commit()
        return vendor


class PayoutWorkflowTestCase(_InMemoryAppMixin, unittest.TestCase):
    def test_request_more_than_available_is_rejected(self):
        with self.app.app_context():
            vendor = self._vendor(available="10000")
            with self.assertRaises(InsufficientBalance) as ctx:
                request_payout(vendor.id, "12000")
            self.assertIn("insufficient balance", ctx.exception.message)
            vendor = db.session.get(Vendor, int(vendor.id))
            self.assertEqual(_money(vendor.available_balance), Decimal("10000.00"))
            self.assertEqual(_money(vendor.pending_balance), Decimal("0.00"))
            self.assertEqual(PayoutRequest.query.filter_by(vendor_id=int(vendor.id)).count(), 0)

    def test_request_validates_amount_and_bank_details(self):
        with self.app.app_context():
            vendor = self._vendor(available="500")
            with self.assertRaises(ValidationError):
                request_payout(vendor.id, "0")
            with self.assertRaises(ValidationError):
                request_payout(vendor.id, "abc")
            unbanked = self._vendor(available="500", with_bank=False)
            with self.assertRaises(MissingBankDetails) as ctx:
                request_payout(unbanked.id, "100")
            self.assertIn("bank details missing", ctx.exception.message)

    def test_request_then_reject_restores_balance(self):
        with self.app.app_context():
            admin = self._admin()
            vendor = self._vendor(available="10000")
            req = request_payout(vendor.id, "4000", "rent")
            self.assertEqual(req.status, "pending")
            self.assertEqual(_money(req.available_balance_snapshot), Decimal("10000.00"))
            vendor = db.session.get(Vendor, int(vendor.id))
            self.assertEqual(_money(vendor.pending_balance), Decimal("4000.00"))
            self.assertEqual(_money(vendor.available_balance), Decimal("6000.00"))
            notice = Notification.query.filter_by(event_type="payout.requested", subject_id=str(req.id)).first()
            self.assertIsNotNone(notice)
            self.assertEqual(notice.recipient, "finance@buylock.test")

            req = reject_payout(req.id, admin.id, "missing invoice")
            self.assertEqual(req.status, "rejected")
            self.assertEqual(req.admin_notes, "missing invoice")
            vendor = db.session.get(Vendor, int(vendor.id))
            self.assertEqual(_money(vendor.pending_balance), Decimal("0.00"))
            self.assertEqual(_money(vendor.available_balance), Decimal("10000.00"))

            with self.assertRaises(InvalidTransition):
                approve_payout(req.id, admin.id, provider=MockPaymentsProvider())

    def test_approve_then_settle_success(self):
        with self.app.app_context():
            admin = self._admin()
            vendor = self._vendor(available="10000")
            gateway = MockPaymentsProvider()
            req = request_payout(vendor.id, "4000")
            req = approve_payout(req.id, admin.id, "ok", provider=gateway)

            self.assertEqual(req.status, "processing")
            self.assertEqual(req.transfer_reference, f"payout_{req.id}_{vendor.id}")
            self.assertTrue(req.transfer_code)
            self.assertEqual(len(gateway.transfers), 1)
            self.assertEqual(gateway.transfers[0]["amount_minor"], 400000)
            vendor = db.session.get(Vendor, int(vendor.id))
            self.assertTrue(vendor.paystack_recipient_code)
            self.assertEqual(_money(vendor.pending_balance), Decimal("4000.00"))

            req = settle_transfer(req.transfer_code, "success")
            self.assertEqual(req.status, "completed")
            self.assertEqual(_money(req.actual_paid_amount), Decimal("4000.00"))
            vendor = db.session.get(Vendor, int(vendor.id))
            self.assertEqual(_money(vendor.pending_balance), Decimal("0.00"))
            self.assertEqual(_money(vendor.available_balance), Decimal("6000.00"))
            self.assertEqual(_money(vendor.total_paid_out), Decimal("4000.00"))

            again = settle_transfer(req.transfer_code, "failed")
            self.assertEqual(again.status, "completed")
            vendor = db.session.get(Vendor, int(vendor.id))
            self.assertEqual(_money(vendor.available_balance), Decimal("6000.00"))

    def test_gateway_failure_marks_failed_and_returns_funds(self):
        with self.app.app_context():
            admin = self._admin()
            vendor = self._vendor(available="10000")
            req = request_payout(vendor.id, "4000")
            with self.assertRaises(ExternalServiceError) as ctx:
                approve_payout(req.id, admin.id, provider=MockPaymentsProvider(fail_transfers=True))
            self.assertEqual(ctx.exception.code, "transfer_failed")

            req = db.session.get(PayoutRequest, int(req.id))
            self.assertEqual(req.status, "failed")
            self.assertTrue(req.failure_reason)
            vendor = db.session.get(Vendor, int(vendor.id))
            self.assertEqual(_money(vendor.pending_balance), Decimal("0.00"))
            self.assertEqual(_money(vendor.available_balance), Decimal("10000.00"))

    def test_reversed_transfer_returns_funds(self):
        with self.app.app_context():
            admin = self._admin()
            vendor = self._vendor(available="2500")
            req = request_payout(vendor.id, "2500")
            req = approve_payout(req.id, admin.id, provider=MockPaymentsProvider())
            req = settle_transfer(req.transfer_reference, "reversed", reason="account closed")
            self.assertEqual(req.status, "failed")
            self.assertEqual(req.failure_reason, "account closed")
            vendor = db.session.get(Vendor, int(vendor.id))
            self.assertEqual(_money(vendor.available_balance), Decimal("2500.00"))
            self.assertEqual(_money(vendor.pending_balance), Decimal("0.00"))


class VendorBalanceReconciliationTestCase(_InMemoryAppMixin, unittest.TestCase):
    def _delivered_and_confirmed(self, vendor: Vendor, price: str) -> int:
        suffix = int(time.time_ns())
        buyer = User(name="Recon Buyer", email=f"recon-buyer-{suffix}@buylock.test", role="buyer")
        buyer.set_password("Passw0rd!")
        db.session.add(buyer)
        db.session.commit()
        order, _created = create_order_from_payment(
            f"recon-{suffix}",
            int(buyer.id),
            [{"product_id": 3, "name": "Table", "quantity": 1, "price": price}],
            {"vendor_id": int(vendor.id)},
        )
        oid = int(order.id)
        for action, role in (
            ("accept", "vendor"),
            ("ready", "vendor"),
            ("dispatch", "system"),
            ("mark_delivered", "system"),
            ("confirm", "buyer"),
        ):
            transition_order(oid, action, role)
        return oid

    def test_balances_match_ledger_after_full_cycle(self):
        with self.app.app_context():
            admin = self._admin()
            vendor = self._vendor()
            oid = self._delivered_and_confirmed(vendor, "14500")
            vendor = db.session.get(Vendor, int(vendor.id))
            self.assertEqual(_money(vendor.available_balance), Decimal("11600.00"))

            req = request_payout(vendor.id, "5000")
            req = approve_payout(req.id, admin.id, provider=MockPaymentsProvider(transfer_status="success"))
            self.assertEqual(req.status, "completed")

            vendor = db.session.get(Vendor, int(vendor.id))
            self.assertEqual(
                _money(vendor.total_earnings),
                _money(vendor.available_balance) + _money(vendor.pending_balance) + _money(vendor.total_paid_out),
            )
            self.assertEqual(_money(vendor.available_balance), Decimal("6600.00"))
            self.assertEqual(VendorEarning.query.filter_by(order_id=oid).first().status, "available")

            summary = recompute_vendor_balances()
            self.assertEqual(summary["scope"], "vendor_balances")
            self.assertEqual(summary["drift_count"], 0, summary["drift_items"])

            earnings = vendor_earnings_summary(vendor.id)
            self.assertEqual(earnings["platform_fees"], "2900.00")
            self.assertEqual(earnings["available_balance"], "6600.00")

    def test_drift_is_reported_and_repaired(self):
        with self.app.app_context():
            vendor = self._vendor()
            self._delivered_and_confirmed(vendor, "1000")
            vendor = db.session.get(Vendor, int(vendor.id))
            vendor.available_balance = Decimal("9999.00")
            db.session.commit()

            summary = recompute_vendor_balances()
            drifted = [d for d in summary["drift_items"] if d["vendor_id"] == int(vendor.id)]
            self.assertEqual(len(drifted), 1)
            self.assertIn("available_balance", drifted[0]["fields"])
            report = persist_report(summary)
            self.assertGreaterEqual(int(report.drift_count), 1)

            recompute_vendor_balances(apply=True)
            vendor = db.session.get(Vendor, int(vendor.id))
            self.assertEqual(_money(vendor.available_balance), Decimal("800.00"))
            self.assertEqual(recompute_vendor_balances()["drift_count"], 0)


if __name__ == "__main__":
    unittest.main()
