from __future__ import annotations

import unittest

from app import create_app


class ApiErrorContractTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.app = create_app()
        cls.app.config.update(TESTING=True)
        cls.client = cls.app.test_client()

    def _assert_error_shape(self, res, status: int) -> dict:
        self.assertEqual(res.status_code, status)
        self.assertTrue(res.is_json)
        body = res.get_json(force=True) or {}
        self.assertFalse(bool(body.get("ok", True)))
        self.assertTrue(str(body.get("error") or "").strip())
        self.assertTrue(str(body.get("message") or "").strip())
        self.assertEqual(int(body.get("status") or 0), status)
        self.assertTrue(str(body.get("trace_id") or "").strip())
        return body

    def test_unknown_api_route_returns_json_error_shape(self):
        res = self.client.get("/api/does-not-exist")
        self._assert_error_shape(res, 404)

    def test_marketplace_error_uses_same_shape(self):
        res = self.client.get("/api/orders/confirm/short")
        body = self._assert_error_shape(res, 404)
        self.assertEqual(body["error"], "not_found")
        self.assertEqual(body["message"], "Order not found or confirmation link expired")

    def test_wrong_method_is_json(self):
        res = self.client.delete("/api/health")
        self._assert_error_shape(res, 405)


if __name__ == "__main__":
    unittest.main()
