from __future__ import annotations

import os
import unittest
import uuid
from unittest.mock import patch

from handoff import create_app
from handoff.extensions import db


class RequestIdHeadersTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._env = patch.dict(
            os.environ,
            {"SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:", "DATABASE_URL": "sqlite:///:memory:"},
        )
        cls._env.start()
        cls.app = create_app()
        cls.app.config.update(TESTING=True)
        with cls.app.app_context():
            db.create_all()
        cls.client = cls.app.test_client()

    @classmethod
    def tearDownClass(cls):
        cls._env.stop()

    def test_health_gets_generated_uuid(self):
        rid = self.client.get("/api/health").headers.get("X-Request-Id", "")
        self.assertEqual(str(uuid.UUID(rid)), rid)

    def test_caller_request_id_is_echoed(self):
        res = self.client.get("/api/health", headers={"X-Request-Id": "courier-app-42"})
        self.assertEqual(res.headers.get("X-Request-Id"), "courier-app-42")

    def test_distinct_requests_get_distinct_ids(self):
        first = self.client.get("/api/health").headers.get("X-Request-Id")
        second = self.client.get("/api/health").headers.get("X-Request-Id")
        self.assertNotEqual(first, second)

    def test_webhook_rejection_trace_matches_header(self):
        res = self.client.post(
            "/api/webhooks/payments",
            data=b"not-json",
            headers={"Content-Type": "application/json", "X-Request-Id": "psp-delivery-7"},
        )
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.get_json()["trace_id"], "psp-delivery-7")
        self.assertEqual(res.headers.get("X-Request-Id"), "psp-delivery-7")


if __name__ == "__main__":
    unittest.main()
