from __future__ import annotations

import os
import time
import unittest
from unittest.mock import patch

from app import create_app
from app.extensions import db
from app.models import Notification
from app.services.notification_service import dispatch_notification, dispatch_pending, queue_notification
from app.tasks.notification_tasks import _retry_countdown, deliver_notification_task

SANDBOX_ENV = {
    "INTEGRATIONS_MODE": "sandbox",
    "TERMII_ENABLED_SMS": "1",
    "EMAIL_ENABLED": "1",
    "MOCK_NOTIFY_FORCE_FAIL": "",
}


class NotificationOutboxTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._prev_db_uri = os.getenv("SQLALCHEMY_DATABASE_URI")
        os.environ["SQLALCHEMY_DATABASE_URI"] = "sqlite:///:memory:"
        cls.app = create_app()
        cls.app.config.update(TESTING=True)
        with cls.app.app_context():
            db.create_all()

    @classmethod
    def tearDownClass(cls):
        if cls._prev_db_uri is None:
            os.environ.pop("SQLALCHEMY_DATABASE_URI", None)
        else:
            os.environ["SQLALCHEMY_DATABASE_URI"] = cls._prev_db_uri

    def _queue(self, channel: str, recipient: str, message: str) -> Notification:
        row = queue_notification(
            "test.event",
            channel=channel,
            recipient=recipient,
            message=message,
            title="Test",
            subject_type="test",
            subject_id=time.time_ns(),
        )
        db.session.commit()
        return row

    def test_queue_skips_empty_recipient_and_dedupes(self):
        with self.app.app_context():
            self.assertIsNone(queue_notification("test.event", channel="sms", recipient="  ", message="hi"))
            first = queue_notification(
                "test.dedupe", channel="sms", recipient="+254700111222", message="hi", subject_type="order", subject_id=1
            )
            db.session.commit()
            self.assertIsNotNone(first)
            second = queue_notification(
                "test.dedupe", channel="sms", recipient="+254700111222", message="hi again", subject_type="order", subject_id=1
            )
            self.assertIsNone(second)
            self.assertEqual(Notification.query.filter_by(event_type="test.dedupe").count(), 1)

    def test_sandbox_dispatch_sends_sms_and_email(self):
        with self.app.app_context():
            sms = self._queue("sms", "+254700000010", "Your order is ready")
            email = self._queue("email", "buyer@buylock.test", "Confirm your order")
            with patch.dict(os.environ, SANDBOX_ENV, clear=False):
                summary = dispatch_pending(limit=50)
            self.assertGreaterEqual(summary["sent"], 2)
            for row_id in (sms.id, email.id):
                row = db.session.get(Notification, int(row_id))
                self.assertEqual(row.status, "sent")
                self.assertEqual(row.attempts, 1)
                self.assertEqual(row.provider, "mock")
                self.assertIsNotNone(row.sent_at)

            again = dispatch_notification(int(sms.id))
            self.assertEqual(again["status"], "sent")
            self.assertEqual(db.session.get(Notification, int(sms.id)).attempts, 1)

    def test_provider_failure_is_recorded_for_retry(self):
        with self.app.app_context():
            row = self._queue("sms", "+254700000011", "[fail] this one")
            with patch.dict(os.environ, SANDBOX_ENV, clear=False):
                outcome = dispatch_notification(int(row.id))
            self.assertFalse(outcome["ok"])
            row = db.session.get(Notification, int(row.id))
            self.assertEqual(row.status, "failed")
            self.assertIn("SMS_PROVIDER_DOWN", row.last_error)
            self.assertEqual(row.attempts, 1)

    def test_disabled_integrations_skip_delivery(self):
        with self.app.app_context():
            row = self._queue("email", "vendor@buylock.test", "Payout sent")
            with patch.dict(os.environ, {"INTEGRATIONS_MODE": "disabled"}, clear=False):
                outcome = dispatch_notification(int(row.id))
            self.assertEqual(outcome["status"], "skipped")
            row = db.session.get(Notification, int(row.id))
            self.assertEqual(row.status, "skipped")
            self.assertIn("INTEGRATION_DISABLED", row.last_error)

    def test_delivery_task_runs_inside_app_context(self):
        with self.app.app_context():
            row = self._queue("sms", "+254700000012", "Task delivery")
            with patch.dict(os.environ, SANDBOX_ENV, clear=False):
                outcome = deliver_notification_task.run(notification_id=int(row.id), trace_id="t-1")
            self.assertEqual(outcome["status"], "sent")
            self.assertEqual(db.session.get(Notification, int(row.id)).status, "sent")

    def test_retry_backoff_is_capped(self):
        self.assertEqual(_retry_countdown(0), 5)
        self.assertEqual(_retry_countdown(3), 40)
        self.assertEqual(_retry_countdown(20), 900)


if __name__ == "__main__":
    unittest.main()
