from __future__ import annotations

import os
import time
import unittest
from decimal import Decimal
from unittest.mock import patch

from app import create_app
from app.errors import InvalidTransition, PermissionDenied, ValidationError
from app.extensions import db
from app.models import Delivery, DeliveryProvider, DeliveryUpdate, Notification, Order, User, Vendor
from app.services.delivery_service import (
    calculate_courier_cost,
    courier_total,
    create_delivery,
    delivery_history,
    estimate_distance_km,
    handle_courier_webhook,
    normalize_courier_status,
    reassign_delivery,
    seed_delivery_providers,
    update_delivery_status,
    weight_multiplier,
)
from app.services.order_lifecycle_service import create_order_from_payment, get_tracking, transition_order


class CourierCostTestCase(unittest.TestCase):
    def test_cost_formula(self):
        self.assertEqual(courier_total("200", "18", 12, weight_multiplier(6)), Decimal("832"))
        self.assertEqual(courier_total("250", "20", 5, weight_multiplier(None)), Decimal("350"))
        self.assertEqual(courier_total("200", "18", 2.5, 1), Decimal("245"))

    def test_weight_multiplier_steps(self):
        self.assertEqual(weight_multiplier(0), 1)
        self.assertEqual(weight_multiplier(5), 1)
        self.assertEqual(weight_multiplier(5.1), 2)
        self.assertEqual(weight_multiplier(11), 3)
        with self.assertRaises(ValidationError):
            weight_multiplier(-1)

    def test_keyword_distances(self):
        self.assertEqual(estimate_distance_km("Karen Road, Nairobi"), 12.0)
        self.assertEqual(estimate_distance_km("Thika Town"), 25.0)
        self.assertEqual(estimate_distance_km("Nairobi CBD"), 3.0)
        self.assertEqual(estimate_distance_km("Somewhere else"), 5.0)
        self.assertEqual(estimate_distance_km(None), 5.0)

    def test_courier_status_vocabularies(self):
        self.assertEqual(normalize_courier_status("fargo_courier", "Collected"), "picked_up")
        self.assertEqual(normalize_courier_status("fargo_courier", "to deliver"), "out_for_delivery")
        self.assertEqual(normalize_courier_status("g4s", "in_transit"), "in_transit")
        self.assertEqual(normalize_courier_status("manual", "out for delivery"), "out_for_delivery")
        with self.assertRaises(ValidationError):
            normalize_courier_status("g4s", "teleported")


class DeliveryDispatchTestCase(unittest.TestCase):
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
            seed_delivery_providers()

    @classmethod
    def tearDownClass(cls):
        for key, value in cls._prev_env.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value

    def _ready_order(self, *, address: str = "Westlands, Nairobi", advance: bool = True) -> Order:
        suffix = int(time.time_ns())
        buyer = User(name="Dispatch Buyer", email=f"dispatch-buyer-{suffix}@buylock.test", role="buyer")
        buyer.set_password("Passw0rd!")
        owner = User(name="Dispatch Vendor", email=f"dispatch-vendor-{suffix}@buylock.test", role="vendor")
        owner.set_password("Passw0rd!")
        db.session.add_all([buyer, owner])
        db.session.flush()
        vendor = Vendor(user_id=int(owner.id), business_name=f"Dispatch Shop {suffix}", business_address="Moi Avenue")
        db.session.add(vendor)
        db.session.commit()
        order, _created = create_order_from_payment(
            f"dispatch-{suffix}",
            int(buyer.id),
            [{"product_id": 9, "name": "Fridge", "quantity": 1, "price": "42000"}],
            {"vendor_id": int(vendor.id), "delivery_address": address},
        )
        if advance:
            transition_order(order.id, "accept", "vendor")
            transition_order(order.id, "ready", "vendor")
        return db.session.get(Order, int(order.id))

    def test_quote_uses_keyword_distance_without_coordinates(self):
        with self.app.app_context():
            order = self._ready_order()
            quote = calculate_courier_cost("fargo-courier", weight_kg=6, order=order)
            self.assertEqual(quote.distance_km, 12.0)
            self.assertEqual(quote.weight_multiplier, 2)
            self.assertEqual(quote.total, Decimal("832"))

    def test_quote_uses_coordinates_when_known(self):
        with self.app.app_context():
            order = self._ready_order(address="Unknown street")
            vendor = db.session.get(Vendor, int(order.vendor_id))
            vendor.latitude, vendor.longitude = -1.2921, 36.8219
            order.delivery_latitude, order.delivery_longitude = -1.2021, 36.8219
            db.session.commit()
            quote = calculate_courier_cost("fargo-courier", order=db.session.get(Order, int(order.id)))
            self.assertAlmostEqual(quote.distance_km, 10.0, delta=0.1)

    def test_create_delivery_moves_order_to_awaiting_dispatch(self):
        with self.app.app_context():
            order = self._ready_order()
            delivery = create_delivery(order.id, "fargo-courier", weight_kg=6, package_description="Fridge")
            self.assertEqual(delivery.status, "pending")
            self.assertEqual(Decimal(str(delivery.delivery_fee)), Decimal("832.00"))
            self.assertEqual(delivery.external_tracking_id, f"BL-{int(order.id):06d}-{int(delivery.id)}")

            order = db.session.get(Order, int(order.id))
            self.assertEqual(order.status, "awaiting_dispatch")
            self.assertEqual(order.courier_name, "Fargo Courier")
            self.assertEqual(order.tracking_number, delivery.external_tracking_id)
            self.assertEqual(get_tracking(order.id)[-1].status, "Awaiting Dispatch")
            self.assertIn("Fargo Courier", get_tracking(order.id)[-1].description)
            self.assertIsNotNone(
                Notification.query.filter_by(event_type="delivery.requested", subject_id=str(delivery.id)).first()
            )

            again = create_delivery(order.id, "g4s")
            self.assertEqual(int(again.id), int(delivery.id))
            self.assertEqual(Delivery.query.filter_by(order_id=int(order.id)).count(), 1)

    def test_create_delivery_requires_ready_order(self):
        with self.app.app_context():
            order = self._ready_order(advance=False)
            with self.assertRaises(InvalidTransition):
                create_delivery(order.id, "fargo-courier")
            self.assertEqual(Delivery.query.filter_by(order_id=int(order.id)).count(), 0)
            self.assertEqual(db.session.get(Order, int(order.id)).status, "paid")

    def test_courier_webhooks_drive_order_status(self):
        with self.app.app_context():
            order = self._ready_order()
            delivery = create_delivery(order.id, "fargo-courier")
            tracking_id = delivery.external_tracking_id

            handle_courier_webhook("fargo-courier", {"tracking_id": tracking_id, "status": "collected", "event_id": "evt-1"})
            self.assertEqual(db.session.get(Order, int(order.id)).status, "dispatched")
            updates_before = DeliveryUpdate.query.filter_by(delivery_id=int(delivery.id)).count()
            tracking_before = len(get_tracking(order.id))

            replay = handle_courier_webhook("fargo-courier", {"tracking_id": tracking_id, "status": "collected", "event_id": "evt-1"})
            self.assertEqual(replay.status, "picked_up")
            self.assertEqual(DeliveryUpdate.query.filter_by(delivery_id=int(delivery.id)).count(), updates_before)
            self.assertEqual(len(get_tracking(order.id)), tracking_before)

            handle_courier_webhook("fargo-courier", {"tracking_id": tracking_id, "status": "in_warehouse", "event_id": "evt-2"})
            self.assertEqual(db.session.get(Order, int(order.id)).status, "in_delivery")
            handle_courier_webhook(
                "fargo-courier",
                {"tracking_id": tracking_id, "status": "delivered", "event_id": "evt-3", "location": "Gate B"},
            )
            order = db.session.get(Order, int(order.id))
            self.assertEqual(order.status, "delivered")
            last = get_tracking(order.id)[-1]
            self.assertTrue(last.is_delivered)
            self.assertEqual(last.location, "Gate B")
            self.assertEqual(last.source, "courier")

            delivery = db.session.get(Delivery, int(delivery.id))
            self.assertIsNotNone(delivery.actual_pickup_time)
            self.assertIsNotNone(delivery.actual_delivery_time)
            self.assertEqual([u.status for u in delivery_history(delivery.id)][-1], "delivered")

            with self.assertRaises(InvalidTransition):
                update_delivery_status(delivery.id, "in_transit")

    def test_failed_delivery_can_be_retried(self):
        with self.app.app_context():
            order = self._ready_order()
            delivery = create_delivery(order.id, "g4s")
            update_delivery_status(delivery.id, "failed", "nobody at the gate")
            delivery = db.session.get(Delivery, int(delivery.id))
            self.assertEqual(delivery.failure_reason, "nobody at the gate")
            self.assertEqual(db.session.get(Order, int(order.id)).status, "awaiting_dispatch")

            update_delivery_status(delivery.id, "pickup_scheduled")
            update_delivery_status(delivery.id, "picked_up")
            self.assertEqual(db.session.get(Order, int(order.id)).status, "dispatched")

    def test_reassign_keeps_order_status(self):
        with self.app.app_context():
            order = self._ready_order()
            delivery = create_delivery(order.id, "fargo-courier")
            update_delivery_status(delivery.id, "picked_up")
            with self.assertRaises(PermissionDenied):
                reassign_delivery(delivery.id, "g4s", "driver sick", "vendor")

            delivery = reassign_delivery(delivery.id, "g4s", "driver sick", "admin")
            self.assertEqual(delivery.status, "pending")
            g4s = DeliveryProvider.query.filter_by(slug="g4s").first()
            self.assertEqual(int(delivery.provider_id), int(g4s.id))
            last = delivery_history(delivery.id)[-1]
            self.assertEqual(last.kind, "reassigned")
            self.assertIn("driver sick", last.description)

            order = db.session.get(Order, int(order.id))
            self.assertEqual(order.status, "dispatched")
            self.assertEqual(order.courier_name, "G4S Courier")

            update_delivery_status(delivery.id, "delivered")
            with self.assertRaises(InvalidTransition):
                reassign_delivery(delivery.id, "fargo-courier", None, "admin")

    def test_reassigning_back_notifies_courier_again(self):
        with self.app.app_context():
            order = self._ready_order()
            delivery = create_delivery(order.id, "fargo-courier")
            reassign_delivery(delivery.id, "g4s", "van broke down", "admin")
            reassign_delivery(delivery.id, "fargo-courier", "van fixed", "admin")

            requests = Notification.query.filter_by(event_type="delivery.requested", subject_id=str(delivery.id)).all()
            by_channel = {}
            for row in requests:
                by_channel.setdefault(row.channel, []).append(row)
            self.assertEqual(len(by_channel["sms"]), 2)
            self.assertEqual(len(by_channel["email"]), 1)
            self.assertEqual({row.recipient for row in by_channel["sms"]}, {"+254700000001"})

    def test_ready_auto_dispatches_with_default_provider(self):
        with self.app.app_context():
            order = self._ready_order(advance=False)
            transition_order(order.id, "accept", "vendor")
            with patch.dict(os.environ, {"DEFAULT_DELIVERY_PROVIDER_ID": "fargo-courier"}, clear=False):
                transition_order(order.id, "ready", "vendor")
            order = db.session.get(Order, int(order.id))
            self.assertEqual(order.status, "awaiting_dispatch")
            delivery = Delivery.query.filter_by(order_id=int(order.id)).first()
            self.assertIsNotNone(delivery)
            self.assertEqual(order.courier_id, "fargo-courier")
            labels = [t.status for t in get_tracking(order.id)]
            self.assertEqual(labels[-2:], ["Ready for Pickup", "Awaiting Dispatch"])


if __name__ == "__main__":
    unittest.main()
