from __future__ import annotations

import os
import time
import unittest
from decimal import Decimal

from app import create_app
from app.errors import InvalidTransition, NotFound, PermissionDenied, ValidationError
from app.extensions import db
from app.models import Appointment, Notification, Order, OrderItem, OrderTracking, User, Vendor, VendorEarning
from app.services.commission_service import set_platform_fee_percentage
from app.services.order_lifecycle_service import (
    confirm_by_token,
    create_order_from_payment,
    get_tracking,
    transition_order,
    update_task_status,
)


class OrderLifecycleTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._prev_env = {
            key: os.getenv(key)
            for key in ("SQLALCHEMY_DATABASE_URI", "DEFAULT_DELIVERY_PROVIDER_ID", "NOTIFY_DISPATCH_MODE")
        }
        os.environ["SQLALCHEMY_DATABASE_URI"] = "sqlite:///:memory:"
        os.environ.pop("DEFAULT_DELIVERY_PROVIDER_ID", None)
        os.environ.pop("NOTIFY_DISPATCH_MODE", None)
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

    def _seed(self) -> dict:
        suffix = int(time.time_ns())
        buyer = User(name="Lifecycle Buyer", email=f"buyer-{suffix}@buylock.test", role="buyer")
        buyer.set_password("Passw0rd!")
        owner = User(name="Lifecycle Vendor", email=f"vendor-{suffix}@buylock.test", role="vendor")
        owner.set_password("Passw0rd!")
        db.session.add_all([buyer, owner])
        db.session.flush()
        vendor = Vendor(
            user_id=int(owner.id),
            business_name=f"Shop {suffix}",
            phone=f"+2547{suffix % 100000000:08d}",
            account_number="0712345678",
            account_name="Shop Owner",
            bank_name="M-Pesa",
        )
        db.session.add(vendor)
        db.session.commit()
        return {"buyer_id": int(buyer.id), "vendor_id": int(vendor.id), "suffix": suffix}

    def _product_order(self, seed: dict, price: str = "14500") -> Order:
        order, created = create_order_from_payment(
            f"ref-{seed['suffix']}-{time.time_ns()}",
            seed["buyer_id"],
            [{"product_id": 11, "name": "Sofa", "quantity": 1, "price": price}],
            {"vendor_id": seed["vendor_id"], "delivery_address": "Westlands, Nairobi"},
        )
        self.assertTrue(created)
        return order

    def _tracking_count(self, order_id: int) -> int:
        return OrderTracking.query.filter_by(order_id=order_id).count()

    def test_create_order_is_idempotent_per_payment_reference(self):
        with self.app.app_context():
            seed = self._seed()
            ref = f"dup-{seed['suffix']}"
            items = [{"product_id": 5, "name": "Lamp", "quantity": 2, "price": "1250.50"}]
            meta = {"vendor_id": seed["vendor_id"], "delivery_fee": "200"}
            first, created_first = create_order_from_payment(ref, seed["buyer_id"], items, meta)
            second, created_second = create_order_from_payment(ref, seed["buyer_id"], items, meta)

            self.assertTrue(created_first)
            self.assertFalse(created_second)
            self.assertEqual(int(first.id), int(second.id))
            self.assertEqual(Order.query.filter_by(payment_reference=ref).count(), 1)
            self.assertEqual(OrderItem.query.filter_by(order_id=int(first.id)).count(), 1)
            self.assertEqual(Decimal(str(first.total_amount)), Decimal("2701.00"))
            self.assertEqual(first.status, "paid")
            self.assertEqual(self._tracking_count(int(first.id)), 1)

            placed = Notification.query.filter_by(subject_type="order", subject_id=str(first.id), event_type="order.placed").all()
            self.assertEqual(len(placed), 1)
            self.assertIn("New BuyLock Order!", placed[0].message)

    def test_create_order_validates_items(self):
        with self.app.app_context():
            seed = self._seed()
            meta = {"vendor_id": seed["vendor_id"]}
            with self.assertRaises(ValidationError):
                create_order_from_payment(f"bad-{seed['suffix']}", seed["buyer_id"], [], meta)
            with self.assertRaises(ValidationError):
                create_order_from_payment(
                    f"bad2-{seed['suffix']}",
                    seed["buyer_id"],
                    [{"product_id": 1, "service_id": 2, "price": "10"}],
                    meta,
                )
            with self.assertRaises(ValidationError):
                create_order_from_payment(
                    f"bad3-{seed['suffix']}",
                    seed["buyer_id"],
                    [{"product_id": 1, "quantity": 0, "price": "10"}],
                    meta,
                )
            with self.assertRaises(ValidationError):
                create_order_from_payment(
                    f"bad4-{seed['suffix']}",
                    seed["buyer_id"],
                    [{"product_id": 1, "price": "100"}],
                    {"vendor_id": seed["vendor_id"], "amount_paid": "50"},
                )
            with self.assertRaises(NotFound):
                create_order_from_payment(
                    f"bad5-{seed['suffix']}", seed["buyer_id"], [{"product_id": 1, "price": "10"}], {"vendor_id": 999999}
                )
            self.assertEqual(Order.query.filter(Order.payment_reference.like(f"bad%-{seed['suffix']}")).count(), 0)

    def test_product_flow_writes_one_tracking_row_per_transition_and_releases_earnings(self):
        with self.app.app_context():
            seed = self._seed()
            order = self._product_order(seed)
            oid = int(order.id)

            steps = [
                ("accept", "vendor", "confirmed", "Confirmed"),
                ("ready", "vendor", "ready_for_pickup", "Ready for Pickup"),
                ("dispatch", "system", "awaiting_dispatch", "Awaiting Dispatch"),
                ("dispatch", "system", "dispatched", "Dispatched"),
                ("mark_delivered", "courier", "delivered", "Delivered"),
            ]
            for idx, (action, role, status, label) in enumerate(steps, start=2):
                order = transition_order(oid, action, role)
                self.assertEqual(order.status, status)
                self.assertEqual(self._tracking_count(oid), idx)
                self.assertEqual(get_tracking(oid)[-1].status, label)

            order = db.session.get(Order, oid)
            self.assertIsNotNone(order.vendor_accepted_at)
            self.assertIsNotNone(order.delivery_pickup_at)
            self.assertIsNotNone(order.delivered_at)
            self.assertTrue(get_tracking(oid)[-1].is_delivered)

            earnings = VendorEarning.query.filter_by(order_id=oid).all()
            self.assertEqual(len(earnings), 1)
            self.assertEqual(earnings[0].status, "pending")
            self.assertEqual(Decimal(str(earnings[0].platform_fee)), Decimal("2900.00"))
            self.assertEqual(Decimal(str(earnings[0].net_earnings)), Decimal("11600.00"))
            vendor = db.session.get(Vendor, seed["vendor_id"])
            self.assertEqual(Decimal(str(vendor.available_balance)), Decimal("0.00"))

            order = transition_order(oid, "confirm", "buyer", actor_id=seed["buyer_id"])
            self.assertEqual(order.status, "customer_confirmed")
            self.assertEqual(self._tracking_count(oid), 7)
            vendor = db.session.get(Vendor, seed["vendor_id"])
            self.assertEqual(Decimal(str(vendor.available_balance)), Decimal("11600.00"))
            self.assertEqual(Decimal(str(vendor.total_earnings)), Decimal("11600.00"))
            self.assertEqual(VendorEarning.query.filter_by(order_id=oid).first().status, "available")

    def test_repeating_an_action_is_a_noop(self):
        with self.app.app_context():
            seed = self._seed()
            order = self._product_order(seed)
            oid = int(order.id)
            transition_order(oid, "accept", "vendor")
            before = self._tracking_count(oid)
            order = transition_order(oid, "accept", "vendor")
            self.assertEqual(order.status, "confirmed")
            self.assertEqual(self._tracking_count(oid), before)

    def test_cancel_after_delivery_is_rejected_and_order_unchanged(self):
        with self.app.app_context():
            seed = self._seed()
            order = self._product_order(seed)
            oid = int(order.id)
            for action, role in (("accept", "vendor"), ("ready", "vendor"), ("dispatch", "system"), ("mark_delivered", "admin")):
                transition_order(oid, action, role)
            before = self._tracking_count(oid)

            with self.assertRaises(InvalidTransition) as ctx:
                transition_order(oid, "cancel", "buyer")
            self.assertIn("cannot cancel order with status delivered", ctx.exception.message)
            self.assertEqual(ctx.exception.status_code, 409)

            order = db.session.get(Order, oid)
            self.assertEqual(order.status, "delivered")
            self.assertIsNone(order.cancelled_at)
            self.assertEqual(self._tracking_count(oid), before)

    def test_cancel_before_dispatch_notifies_buyer_and_vendor(self):
        with self.app.app_context():
            seed = self._seed()
            order = self._product_order(seed)
            oid = int(order.id)
            order = transition_order(oid, "cancel", "buyer", {"notes": "changed my mind"})
            self.assertEqual(order.status, "cancelled")
            self.assertIsNotNone(order.cancelled_at)
            self.assertIn("customer", get_tracking(oid)[-1].description)
            channels = {
                n.channel
                for n in Notification.query.filter_by(subject_type="order", subject_id=str(oid), event_type="order.cancelled")
            }
            self.assertEqual(channels, {"email", "sms"})

    def test_terminal_actions_cannot_be_repeated(self):
        with self.app.app_context():
            seed = self._seed()
            order = self._product_order(seed)
            oid = int(order.id)
            transition_order(oid, "cancel", "buyer")
            before = self._tracking_count(oid)
            with self.assertRaises(InvalidTransition) as ctx:
                transition_order(oid, "cancel", "vendor")
            self.assertIn("cannot cancel order with status cancelled", ctx.exception.message)
            self.assertEqual(self._tracking_count(oid), before)

            disputed = self._product_order(seed, price="3000")
            did = int(disputed.id)
            for action, role in (("accept", "vendor"), ("ready", "vendor"), ("dispatch", "system"), ("mark_delivered", "system")):
                transition_order(did, action, role)
            transition_order(did, "dispute", "buyer", {"reason": "Wrong colour"})
            with self.assertRaises(InvalidTransition):
                transition_order(did, "dispute", "buyer", {"reason": "Also scratched"})
            disputed = db.session.get(Order, did)
            self.assertEqual(disputed.dispute_reason, "Wrong colour")

    def test_fee_change_does_not_touch_recognized_earnings(self):
        with self.app.app_context():
            seed = self._seed()
            steps = (("accept", "vendor"), ("ready", "vendor"), ("dispatch", "system"), ("mark_delivered", "system"))
            first = self._product_order(seed, price="10000")
            for action, role in steps:
                transition_order(int(first.id), action, role)
            try:
                set_platform_fee_percentage("10")
                db.session.commit()

                earning = VendorEarning.query.filter_by(order_id=int(first.id)).one()
                self.assertEqual(Decimal(str(earning.platform_fee_percentage)), Decimal("20.00"))
                self.assertEqual(Decimal(str(earning.platform_fee)), Decimal("2000.00"))
                self.assertEqual(Decimal(str(earning.net_earnings)), Decimal("8000.00"))

                second = self._product_order(seed, price="10000")
                for action, role in steps:
                    transition_order(int(second.id), action, role)
                later = VendorEarning.query.filter_by(order_id=int(second.id)).one()
                self.assertEqual(Decimal(str(later.platform_fee_percentage)), Decimal("10.00"))
                self.assertEqual(Decimal(str(later.platform_fee)), Decimal("1000.00"))

                transition_order(int(first.id), "confirm", "buyer")
                earning = VendorEarning.query.filter_by(order_id=int(first.id)).one()
                self.assertEqual(earning.status, "available")
                self.assertEqual(Decimal(str(earning.net_earnings)), Decimal("8000.00"))
            finally:
                set_platform_fee_percentage("20")
                db.session.commit()

    def test_role_and_action_checks(self):
        with self.app.app_context():
            seed = self._seed()
            order = self._product_order(seed)
            oid = int(order.id)
            with self.assertRaises(PermissionDenied):
                transition_order(oid, "accept", "buyer")
            with self.assertRaises(PermissionDenied):
                transition_order(oid, "confirm", "vendor")
            with self.assertRaises(ValidationError):
                transition_order(oid, "teleport", "admin")
            with self.assertRaises(InvalidTransition):
                transition_order(oid, "mark_delivered", "admin")
            with self.assertRaises(NotFound):
                transition_order(999999, "accept", "vendor")
            self.assertEqual(db.session.get(Order, oid).status, "paid")

    def test_confirmation_token_confirm_and_dispute(self):
        with self.app.app_context():
            seed = self._seed()
            first = self._product_order(seed, price="5000")
            second = self._product_order(seed, price="3000")
            for oid in (int(first.id), int(second.id)):
                for action, role in (("accept", "vendor"), ("ready", "vendor"), ("dispatch", "system"), ("mark_delivered", "system")):
                    transition_order(oid, action, role)

            order = confirm_by_token(first.confirmation_token, "confirm")
            self.assertEqual(order.status, "customer_confirmed")
            self.assertIsNotNone(order.customer_confirmed_at)

            with self.assertRaises(ValidationError):
                confirm_by_token(second.confirmation_token, "dispute")
            order = confirm_by_token(second.confirmation_token, "dispute", "Item arrived damaged")
            self.assertEqual(order.status, "disputed")
            self.assertEqual(order.dispute_reason, "Item arrived damaged")
            self.assertEqual(VendorEarning.query.filter_by(order_id=int(second.id)).first().status, "pending")

            with self.assertRaises(NotFound):
                confirm_by_token("short", "confirm")
            with self.assertRaises(NotFound):
                confirm_by_token("x" * 43, "confirm")

    def test_service_order_mirrors_task_status(self):
        with self.app.app_context():
            seed = self._seed()
            order, created = create_order_from_payment(
                f"svc-{seed['suffix']}",
                seed["buyer_id"],
                [
                    {
                        "service_id": 7,
                        "name": "Plumbing repair",
                        "price": "3000",
                        "appointment_date": "2026-11-02",
                        "appointment_time": "10:00",
                        "service_location": "Kilimani",
                    }
                ],
                {"vendor_id": seed["vendor_id"]},
            )
            self.assertTrue(created)
            self.assertEqual(order.order_type, "service")
            appt = Appointment.query.filter_by(order_id=int(order.id)).first()
            self.assertIsNotNone(appt)
            self.assertEqual(appt.status, "pending_acceptance")

            for task_status in ("accepted", "in_progress", "completed"):
                appt = update_task_status(appt.id, task_status, vendor_notes=f"now {task_status}")
                self.assertEqual(appt.status, task_status)
                self.assertEqual(db.session.get(Order, int(order.id)).status, task_status)

            self.assertEqual(appt.vendor_notes, "now completed")
            self.assertEqual(VendorEarning.query.filter_by(order_id=int(order.id)).count(), 1)

            with self.assertRaises(InvalidTransition):
                update_task_status(appt.id, "in_progress")
            with self.assertRaises(PermissionDenied):
                update_task_status(appt.id, "completed", actor_role="buyer")


if __name__ == "__main__":
    unittest.main()
