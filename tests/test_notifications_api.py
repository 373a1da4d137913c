from __future__ import annotations

import os
import unittest
from unittest.mock import patch

from handoff import create_app
from handoff.extensions import db
from handoff.models import Notification, User
from handoff.services import notifier
from handoff.utils.jwt_utils import create_token


class NotificationsApiTestCase(unittest.TestCase):
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

    @classmethod
    def tearDownClass(cls):
        for key, value in cls._saved_env.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value

    def setUp(self):
        self._env = patch.dict(os.environ, {"PUSH_PROVIDER": "mock", "NOTIFICATIONS_ASYNC": "0", "MOCK_PUSH_FORCE_FAIL": "0"})
        self._env.start()
        with self.app.app_context():
            db.session.remove()
            db.drop_all()
            db.create_all()
            alice = User(name="Alice", email="alice@handoff.test", role="buyer")
            bob = User(name="Bob", email="bob@handoff.test", role="seller")
            db.session.add_all([alice, bob])
            db.session.commit()
            self.alice_id = int(alice.id)
            self.bob_id = int(bob.id)

    def tearDown(self):
        self._env.stop()

    def _auth(self, user_id: int) -> dict:
        return {"Authorization": f"Bearer {create_token(user_id)}"}

    def test_notify_sends_through_push_provider(self):
        with self.app.app_context():
            row = notifier.notify(self.alice_id, "Hello", "Your order moved", "order_picked_up", {"order_id": 7})
            self.assertIsNotNone(row)
            self.assertEqual(row.status, "sent")
            self.assertEqual(row.attempts, 1)
            self.assertEqual(row.provider, "mock")
            self.assertEqual(row.data_dict(), {"order_id": 7})

    def test_push_failure_is_recorded_not_raised(self):
        with self.app.app_context():
            row = notifier.notify(self.alice_id, "Hello", "[fail] gateway down", "general")
            self.assertEqual(row.status, "failed")
            self.assertIn("PUSH_PROVIDER_DOWN", row.last_error)

    def test_disabled_push_leaves_row_queued(self):
        with patch.dict(os.environ, {"PUSH_PROVIDER": "disabled"}):
            with self.app.app_context():
                row = notifier.notify(self.alice_id, "Hello", "quiet", "general")
                self.assertEqual(row.status, "queued")

    def test_async_mode_enqueues_dispatch(self):
        with patch.dict(os.environ, {"NOTIFICATIONS_ASYNC": "1"}):
            with patch("handoff.tasks.settlement_tasks.dispatch_notification_task.delay") as mocked_delay:
                with self.app.app_context():
                    row = notifier.notify(self.alice_id, "Hello", "later", "general")
                    self.assertEqual(row.status, "queued")
                mocked_delay.assert_called_once()

    def test_notify_many_deduplicates_recipients(self):
        with self.app.app_context():
            sent = notifier.notify_many([self.alice_id, self.bob_id, self.alice_id, None], "Hi", "both", "general")
            self.assertEqual(sent, 2)
            self.assertEqual(Notification.query.count(), 2)

    def test_list_and_mark_read(self):
        with self.app.app_context():
            notifier.notify(self.alice_id, "One", "first", "general")
            notifier.notify(self.alice_id, "Two", "second", "general")
            notifier.notify(self.bob_id, "Other", "not yours", "general")

        res = self.client.get("/api/notifications", headers=self._auth(self.alice_id))
        self.assertEqual(res.status_code, 200)
        items = res.get_json()["items"]
        self.assertEqual(len(items), 2)
        target = items[0]["id"]

        marked = self.client.post(f"/api/notifications/{target}/read", headers=self._auth(self.alice_id))
        self.assertEqual(marked.status_code, 200)
        self.assertTrue(marked.get_json()["item"]["is_read"])

        unread = self.client.get("/api/notifications?unread=1", headers=self._auth(self.alice_id)).get_json()["items"]
        self.assertEqual(len(unread), 1)

        foreign = self.client.post(f"/api/notifications/{target}/read", headers=self._auth(self.bob_id))
        self.assertEqual(foreign.status_code, 404)

    def test_requires_auth(self):
        self.assertEqual(self.client.get("/api/notifications").status_code, 401)


if __name__ == "__main__":
    unittest.main()
