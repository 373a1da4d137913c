from __future__ import annotations

import os
import unittest
from unittest.mock import patch

from handoff import create_app
from handoff.extensions import db
from handoff.models import Order, Product, User
from handoff.services import escrow_wallet
from handoff.services.unit_of_work import run_atomic
from handoff.utils.jwt_utils import create_token


class OrdersApiTestCase(unittest.TestCase):
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
        self._env = patch.dict(os.environ, {"PLATFORM_FEE_BPS": "100", "AFFILIATE_SHARE_BPS": "5000"})
        self._env.start()
        with self.app.app_context():
            db.session.remove()
            db.drop_all()
            db.create_all()
            buyer = User(name="Buyer", email="buyer@handoff.test", role="buyer")
            seller = User(name="Seller", email="seller@handoff.test", role="seller")
            courier = User(name="Courier", email="courier@handoff.test", role="courier")
            stranger = User(name="Stranger", email="stranger@handoff.test", role="buyer")
            db.session.add_all([buyer, seller, courier, stranger])
            db.session.flush()
            product = Product(seller_id=int(seller.id), title="Sneakers", unit_price_minor=10000, currency="NGN")
            db.session.add(product)
            db.session.commit()
            self.buyer_id = int(buyer.id)
            self.seller_id = int(seller.id)
            self.courier_id = int(courier.id)
            self.stranger_id = int(stranger.id)
            self.product_id = int(product.id)
            run_atomic(lambda: escrow_wallet.fund(self.buyer_id, 30000, "NGN", "seed-buyer"))
            run_atomic(lambda: escrow_wallet.settle("seed-buyer", success=True))

    def tearDown(self):
        self._env.stop()

    def _auth(self, user_id: int, **extra) -> dict:
        headers = {"Authorization": f"Bearer {create_token(user_id)}"}
        headers.update(extra)
        return headers

    def _payload(self) -> dict:
        return {
            "sellerId": self.seller_id,
            "currency": "NGN",
            "items": [{"productId": self.product_id, "quantity": 1, "unitPrice": 10000}],
            "dropoff": {"latitude": 6.45, "longitude": 3.39, "address": "12 Marina"},
        }

    def _buyer_balance(self) -> int:
        with self.app.app_context():
            return int(escrow_wallet.find_user_wallet(self.buyer_id, "NGN").balance_minor)

    def test_place_order_requires_auth(self):
        res = self.client.post("/api/orders", json=self._payload())
        self.assertEqual(res.status_code, 401)

    def test_place_order_returns_token_and_total(self):
        res = self.client.post("/api/orders", json=self._payload(), headers=self._auth(self.buyer_id))
        self.assertEqual(res.status_code, 201, res.get_data(as_text=True))
        body = res.get_json()
        for key in ("orderId", "qrToken", "qrReference", "totalCharged", "currency", "status", "expiresAt"):
            self.assertIn(key, body)
        self.assertEqual(body["totalCharged"], 10100)
        self.assertEqual(self._buyer_balance(), 30000 - 10100)

    def test_idempotency_key_replays_without_second_debit(self):
        headers = self._auth(self.buyer_id, **{"Idempotency-Key": "order-key-1"})
        first = self.client.post("/api/orders", json=self._payload(), headers=headers)
        second = self.client.post("/api/orders", json=self._payload(), headers=headers)
        self.assertEqual(first.status_code, 201)
        self.assertEqual(second.status_code, 201)
        self.assertEqual(first.get_json()["orderId"], second.get_json()["orderId"])
        self.assertEqual(self._buyer_balance(), 30000 - 10100)
        with self.app.app_context():
            self.assertEqual(Order.query.count(), 1)

        changed = dict(self._payload(), currency="USD")
        conflict = self.client.post("/api/orders", json=changed, headers=headers)
        self.assertEqual(conflict.status_code, 409)
        self.assertEqual(conflict.get_json()["error"], "IDEMPOTENCY_KEY_REUSE")

    def test_business_failure_carries_code_and_trace_id(self):
        payload = self._payload()
        payload["items"][0]["quantity"] = 3
        res = self.client.post("/api/orders", json=payload, headers=self._auth(self.buyer_id, **{"X-Request-Id": "trace-orders-1"}))
        self.assertEqual(res.status_code, 409)
        body = res.get_json()
        self.assertFalse(body["ok"])
        self.assertEqual(body["error"], "INSUFFICIENT_FUNDS")
        self.assertEqual(body["trace_id"], "trace-orders-1")
        self.assertEqual(res.headers.get("X-Request-Id"), "trace-orders-1")

    def test_handoff_over_http(self):
        placed = self.client.post("/api/orders", json=self._payload(), headers=self._auth(self.buyer_id)).get_json()
        oid, token = placed["orderId"], placed["qrToken"]

        hidden = self.client.get(f"/api/orders/{oid}", headers=self._auth(self.stranger_id))
        self.assertEqual(hidden.status_code, 404)
        self.assertEqual(hidden.get_json()["error"], "ORDER_NOT_FOUND")

        assign = self.client.post(f"/api/orders/{oid}/courier", json={"courierId": self.courier_id}, headers=self._auth(self.seller_id))
        self.assertEqual(assign.status_code, 200, assign.get_data(as_text=True))

        early = self.client.post(f"/api/orders/{oid}/delivery", json={"qrToken": token}, headers=self._auth(self.buyer_id))
        self.assertEqual(early.status_code, 409)
        self.assertEqual(early.get_json()["error"], "WRONG_STAGE")

        pickup = self.client.post(f"/api/orders/{oid}/pickup", json={"qrToken": token}, headers=self._auth(self.courier_id))
        self.assertEqual(pickup.status_code, 200, pickup.get_data(as_text=True))
        self.assertEqual(pickup.get_json()["status"], "PICKED")

        delivered = self.client.post(f"/api/orders/{oid}/delivery", json={"qrToken": token}, headers=self._auth(self.buyer_id))
        self.assertEqual(delivered.status_code, 200, delivered.get_data(as_text=True))
        self.assertEqual(delivered.get_json()["status"], "DELIVERED")

        view = self.client.get(f"/api/orders/{oid}", headers=self._auth(self.buyer_id)).get_json()["order"]
        self.assertEqual(view["status"], "DELIVERED")
        self.assertEqual(view["escrow"]["status"], "RELEASED")
        self.assertEqual(view["tracking"]["status"], "delivered")
        self.assertEqual([e["event"] for e in view["events"]], ["placed", "courier_assigned", "picked_up", "delivered"])

    def test_bad_token_is_rejected(self):
        placed = self.client.post("/api/orders", json=self._payload(), headers=self._auth(self.buyer_id)).get_json()
        res = self.client.post(f"/api/orders/{placed['orderId']}/pickup", json={"qrToken": "nope"}, headers=self._auth(self.courier_id))
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.get_json()["error"], "INVALID_TOKEN")

    def test_cancel_over_http_refunds(self):
        placed = self.client.post("/api/orders", json=self._payload(), headers=self._auth(self.buyer_id)).get_json()
        res = self.client.post(f"/api/orders/{placed['orderId']}/cancel", json={"reason": "duplicate"}, headers=self._auth(self.seller_id))
        self.assertEqual(res.status_code, 200, res.get_data(as_text=True))
        self.assertEqual(res.get_json()["status"], "CANCELLED")
        self.assertEqual(self._buyer_balance(), 30000)

    def test_unknown_order_is_404(self):
        res = self.client.get("/api/orders/999999", headers=self._auth(self.buyer_id))
        self.assertEqual(res.status_code, 404)
        self.assertIn("trace_id", res.get_json())


if __name__ == "__main__":
    unittest.main()
