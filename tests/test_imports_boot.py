from __future__ import annotations

import importlib
import unittest


class ImportsBootTestCase(unittest.TestCase):
    def test_import_create_app(self):
        module = importlib.import_module("app")
        create_app = getattr(module, "create_app", None)
        self.assertTrue(callable(create_app))

    def test_import_main_app(self):
        module = importlib.import_module("main")
        app = getattr(module, "app", None)
        self.assertIsNotNone(app)

    def test_import_route_segments(self):
        for name in (
            "app.segments.segment_orders",
            "app.segments.segment_payouts",
            "app.segments.segment_deliveries",
            "app.segments.segment_vendors_geo",
            "app.segments.segment_payment_webhooks",
            "app.segments.segment_reconciliation_admin",
        ):
            module = importlib.import_module(name)
            self.assertIsNotNone(module)

    def test_blueprints_registered(self):
        app = importlib.import_module("main").app
        for bp in ("orders_bp", "payouts_bp", "deliveries_bp", "vendors_geo_bp", "webhooks_bp", "recon_bp"):
            self.assertIn(bp, app.blueprints)

    def test_import_notification_tasks(self):
        module = importlib.import_module("app.tasks.notification_tasks")
        self.assertTrue(hasattr(module, "deliver_notification_task"))
        self.assertTrue(hasattr(module, "dispatch_pending_notifications_task"))


if __name__ == "__main__":
    unittest.main()
