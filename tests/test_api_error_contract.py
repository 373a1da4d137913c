from __future__ import annotations

import os
import unittest

from handoff import create_app
from handoff.extensions import db
from handoff.models import User
from handoff.utils.jwt_utils import create_token


class ApiErrorContractTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._saved_env = {
            "SQLALCHEMY_DATABASE_URI": os.getenv("SQLALCHEMY_DATABASE_URI"),
            "DATABASE_URL": os.getenv("DATABASE_URL"),
        }
        os.environ["SQLALCHEMY_DATABASE_URI"] = "sqlite:///:memory:"
        os.environ["DATABASE_URL"] = "sqlite:///:memory:"
        cls.app = create_app()
        cls.app.config.update(TESTING=True)
        cls.client = cls.app.test_client()
        with cls.app.app_context():
            db.create_all()
            user = User(name="Caller", email="caller@handoff.test", role="buyer")
            db.session.add(user)
            db.session.commit()
            cls.user_id = int(user.id)

    @classmethod
    def tearDownClass(cls):
        for key, value in cls._saved_env.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value

    def _assert_error_shape(self, res, status: int):
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
        self._assert_error_shape(self.client.get("/api/does-not-exist"), 404)

    def test_wrong_method_returns_json_error_shape(self):
        self._assert_error_shape(self.client.get("/api/webhooks/payments"), 405)

    def test_business_failure_returns_json_error_shape(self):
        headers = {"Authorization": f"Bearer {create_token(self.user_id)}"}
        res = self.client.post("/api/orders", json={"sellerId": 0, "currency": "NGN", "items": []}, headers=headers)
        body = self._assert_error_shape(res, 400)
        self.assertEqual(body["error"], "VALIDATION_ERROR")

    def test_health_reports_dependencies(self):
        res = self.client.get("/api/health")
        self.assertEqual(res.status_code, 200)
        body = res.get_json()
        self.assertTrue(body["ok"])
        self.assertEqual(body["db"], "ok")
        self.assertIn("status", body["payments"])


if __name__ == "__main__":
    unittest.main()
