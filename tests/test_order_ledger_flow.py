from __future__ import annotations

import os
import unittest
from unittest.mock import patch

from handoff import create_app
from handoff.extensions import db
from handoff.models import DeliveryTracking, EscrowTransition, Notification, Order, OrderEvent, Product, User, Wallet
from handoff.services import escrow_wallet, location_feed, order_ledger
from handoff.services.reconciliation_service import recompute_wallet_balances
from handoff.services.unit_of_work import run_atomic
from handoff.utils.actors import Actor


class OrderLedgerFlowTestCase(unittest.TestCase):
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

    @classmethod
    def tearDownClass(cls):
        for key, value in cls._saved_env.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value

    def setUp(self):
        self._env = patch.dict(
            os.environ,
            {"PLATFORM_FEE_BPS": "100", "AFFILIATE_SHARE_BPS": "5000", "PUSH_PROVIDER": "mock", "NOTIFICATIONS_ASYNC": "0"},
        )
        self._env.start()
        with self.app.app_context():
            db.session.remove()
            db.drop_all()
            db.create_all()
            users = {
                "buyer": User(name="Buyer", email="buyer@handoff.test", role="buyer"),
                "seller": User(name="Seller", email="seller@handoff.test", role="seller"),
                "other_seller": User(name="Other", email="other@handoff.test", role="seller"),
                "affiliate": User(name="Affiliate", email="aff@handoff.test", role="buyer"),
                "courier": User(name="Courier", email="courier@handoff.test", role="courier"),
                "courier2": User(name="Courier Two", email="courier2@handoff.test", role="taxi_moto"),
                "stranger": User(name="Stranger", email="stranger@handoff.test", role="buyer"),
                "admin": User(name="Admin", email="admin@handoff.test", role="admin"),
            }
            db.session.add_all(users.values())
            db.session.flush()
            product = Product(seller_id=int(users["seller"].id), title="Rice 5kg", unit_price_minor=5000, currency="NGN")
            foreign = Product(seller_id=int(users["other_seller"].id), title="Beans", unit_price_minor=700, currency="NGN")
            db.session.add_all([product, foreign])
            db.session.commit()
            self.ids = {name: int(user.id) for name, user in users.items()}
            self.roles = {name: user.role_enum for name, user in users.items()}
            self.product_id = int(product.id)
            self.foreign_product_id = int(foreign.id)
            self._fund(self.ids["buyer"], 20000, "seed-buyer")

    def tearDown(self):
        self._env.stop()

    def _fund(self, user_id: int, amount: int, ref: str) -> None:
        run_atomic(lambda: escrow_wallet.fund(user_id, amount, "NGN", ref))
        run_atomic(lambda: escrow_wallet.settle(ref, success=True))

    def _actor(self, name: str) -> Actor:
        return Actor(user_id=self.ids[name], role=self.roles[name])

    def _balance(self, name: str) -> int:
        wallet = escrow_wallet.find_user_wallet(self.ids[name], "NGN")
        return int(wallet.balance_minor) if wallet is not None else 0

    def _platform_balance(self) -> int:
        wallet = Wallet.query.filter_by(owner_key="platform", currency="NGN").first()
        return int(wallet.balance_minor) if wallet is not None else 0

    def _place(self, *, quantity: int = 2, **extra):
        payload = {
            "sellerId": self.ids["seller"],
            "currency": "NGN",
            "items": [{"productId": self.product_id, "quantity": quantity}],
        }
        payload.update(extra)
        return order_ledger.place_order(self._actor("buyer"), payload)

    def test_place_order_holds_total_in_escrow(self):
        with self.app.app_context():
            outcome = self._place()
            self.assertTrue(outcome.ok, outcome.to_dict())
            self.assertEqual(outcome.status, 201)
            body = outcome.to_dict()
            self.assertEqual(body["totalCharged"], 10100)
            self.assertEqual(body["status"], "PLACED")
            self.assertTrue(body["qrToken"])
            self.assertEqual(self._balance("buyer"), 20000 - 10100)

            order = db.session.get(Order, body["orderId"])
            self.assertEqual(order.escrow_status, "HELD")
            self.assertEqual(int(order.platform_fee_minor), 100)
            self.assertEqual(int(order.seller_net_minor), 10000)
            self.assertEqual(len(order.items), 1)
            self.assertGreater(order.expires_at, order.created_at)

    def test_full_handoff_releases_escrow_once(self):
        with self.app.app_context():
            placed = self._place().to_dict()
            oid, token = placed["orderId"], placed["qrToken"]

            pickup = order_ledger.confirm_pickup(self._actor("courier"), oid, token)
            self.assertTrue(pickup.ok, pickup.to_dict())
            tracking = DeliveryTracking.query.filter_by(order_id=oid).first()
            self.assertEqual(int(tracking.courier_id), self.ids["courier"])
            self.assertEqual(tracking.status, "picked_up")

            delivered = order_ledger.confirm_delivery(self._actor("buyer"), oid, token)
            self.assertTrue(delivered.ok, delivered.to_dict())
            self.assertEqual(delivered.data["status"], "DELIVERED")
            self.assertEqual(self._balance("seller"), 10000)
            self.assertEqual(self._platform_balance(), 100)

            again = order_ledger.confirm_delivery(self._actor("buyer"), oid, token)
            self.assertTrue(again.ok)
            self.assertTrue(again.data["replayed"])
            self.assertEqual(self._balance("seller"), 10000)
            self.assertEqual(self._platform_balance(), 100)

            transitions = [t.to_status for t in EscrowTransition.query.filter_by(order_id=oid).order_by(EscrowTransition.id).all()]
            self.assertEqual(transitions, ["HELD", "RELEASED"])
            events = [e.event for e in OrderEvent.query.filter_by(order_id=oid).order_by(OrderEvent.id).all()]
            self.assertEqual(events, ["placed", "picked_up", "delivered"])
            self.assertEqual(recompute_wallet_balances()["drift_count"], 0)

    def test_affiliate_commission_comes_out_of_platform_fee(self):
        with self.app.app_context():
            placed = self._place(affiliateId=self.ids["affiliate"]).to_dict()
            self.assertEqual(placed["totalCharged"], 10100)
            oid, token = placed["orderId"], placed["qrToken"]
            self.assertTrue(order_ledger.confirm_pickup(self._actor("courier"), oid, token).ok)
            self.assertTrue(order_ledger.confirm_delivery(self._actor("buyer"), oid, token).ok)
            self.assertEqual(self._balance("seller"), 10000)
            self.assertEqual(self._balance("affiliate"), 50)
            self.assertEqual(self._platform_balance(), 50)
            kinds = {n.kind for n in Notification.query.filter_by(user_id=self.ids["affiliate"]).all()}
            self.assertIn("commission_released", kinds)

    def test_pickup_notifies_buyer_and_seller(self):
        with self.app.app_context():
            placed = self._place().to_dict()
            order_ledger.confirm_pickup(self._actor("courier"), placed["orderId"], placed["qrToken"])
            for name in ("buyer", "seller"):
                rows = Notification.query.filter_by(user_id=self.ids[name], kind="order_picked_up").all()
                self.assertEqual(len(rows), 1)
                self.assertEqual(rows[0].status, "sent")

    def test_wrong_courier_cannot_pick_up(self):
        with self.app.app_context():
            placed = self._place().to_dict()
            oid, token = placed["orderId"], placed["qrToken"]
            assigned = order_ledger.assign_courier(self._actor("seller"), oid, self.ids["courier"])
            self.assertTrue(assigned.ok, assigned.to_dict())

            outcome = order_ledger.confirm_pickup(self._actor("courier2"), oid, token)
            self.assertEqual(outcome.code, "ROLE_MISMATCH")
            self.assertEqual(db.session.get(Order, oid).status, "PLACED")

            outcome = order_ledger.confirm_pickup(self._actor("buyer"), oid, token)
            self.assertEqual(outcome.code, "ROLE_MISMATCH")

    def test_only_seller_or_admin_assigns_and_assignee_must_be_courier(self):
        with self.app.app_context():
            oid = self._place().data["orderId"]
            self.assertEqual(order_ledger.assign_courier(self._actor("buyer"), oid, self.ids["courier"]).code, "ROLE_MISMATCH")
            self.assertEqual(order_ledger.assign_courier(self._actor("seller"), oid, self.ids["stranger"]).code, "ROLE_MISMATCH")
            self.assertTrue(order_ledger.assign_courier(self._actor("admin"), oid, self.ids["courier2"]).ok)

    def test_stage_ordering_and_single_use(self):
        with self.app.app_context():
            placed = self._place().to_dict()
            oid, token = placed["orderId"], placed["qrToken"]

            early = order_ledger.confirm_delivery(self._actor("buyer"), oid, token)
            self.assertEqual(early.code, "WRONG_STAGE")

            self.assertEqual(order_ledger.confirm_pickup(self._actor("courier"), oid, "not-the-token").code, "INVALID_TOKEN")
            self.assertTrue(order_ledger.confirm_pickup(self._actor("courier"), oid, token).ok)
            self.assertEqual(order_ledger.confirm_pickup(self._actor("courier"), oid, token).code, "ALREADY_CONSUMED")

            stranger = order_ledger.confirm_delivery(self._actor("stranger"), oid, token)
            self.assertEqual(stranger.code, "ROLE_MISMATCH")
            self.assertEqual(db.session.get(Order, oid).status, "PICKED")

    def test_cancel_refunds_and_invalidates_token(self):
        with self.app.app_context():
            placed = self._place().to_dict()
            oid, token = placed["orderId"], placed["qrToken"]

            self.assertEqual(order_ledger.cancel(self._actor("stranger"), oid).code, "ROLE_MISMATCH")
            outcome = order_ledger.cancel(self._actor("buyer"), oid, "changed my mind")
            self.assertTrue(outcome.ok, outcome.to_dict())
            self.assertEqual(self._balance("buyer"), 20000)
            self.assertEqual(db.session.get(Order, oid).escrow_status, "REFUNDED")

            self.assertEqual(order_ledger.confirm_pickup(self._actor("courier"), oid, token).code, "INVALID_TOKEN")
            replay = order_ledger.cancel(self._actor("seller"), oid)
            self.assertTrue(replay.ok)
            self.assertTrue(replay.data["replayed"])
            self.assertEqual(self._balance("buyer"), 20000)

    def test_delivered_order_cannot_be_cancelled(self):
        with self.app.app_context():
            placed = self._place().to_dict()
            oid, token = placed["orderId"], placed["qrToken"]
            order_ledger.confirm_pickup(self._actor("courier"), oid, token)
            order_ledger.confirm_delivery(self._actor("buyer"), oid, token)
            self.assertEqual(order_ledger.cancel(self._actor("admin"), oid).code, "WRONG_STAGE")
            self.assertEqual(self._balance("seller"), 10000)

    def test_insufficient_funds_persists_nothing(self):
        with self.app.app_context():
            outcome = self._place(quantity=5)
            self.assertEqual(outcome.code, "INSUFFICIENT_FUNDS")
            self.assertEqual(outcome.status, 409)
            self.assertEqual(Order.query.count(), 0)
            self.assertEqual(self._balance("buyer"), 20000)

    def test_item_validation(self):
        with self.app.app_context():
            foreign = self._place(items=[{"productId": self.foreign_product_id, "quantity": 1}])
            self.assertEqual(foreign.code, "SELLER_MISMATCH")

            repriced = self._place(items=[{"productId": self.product_id, "quantity": 1, "unitPrice": 10}])
            self.assertEqual(repriced.code, "INVALID_ITEMS")

            empty = self._place(items=[])
            self.assertEqual(empty.code, "INVALID_ITEMS")

            zero = self._place(items=[{"productId": self.product_id, "quantity": 0}])
            self.assertEqual(zero.code, "INVALID_ITEMS")

            wrong_currency = self._place(currency="USD")
            self.assertEqual(wrong_currency.code, "INVALID_ITEMS")
            self.assertEqual(Order.query.count(), 0)

    def test_order_visibility(self):
        with self.app.app_context():
            placed = self._place().to_dict()
            oid, token = placed["orderId"], placed["qrToken"]
            self.assertEqual(order_ledger.get_order(self._actor("stranger"), oid).code, "ORDER_NOT_FOUND")

            mine = order_ledger.get_order(self._actor("buyer"), oid)
            self.assertEqual(mine.data["order"]["qr_token"], token)

            order_ledger.confirm_pickup(self._actor("courier"), oid, token)
            courier_view = order_ledger.get_order(self._actor("courier"), oid)
            self.assertTrue(courier_view.ok)
            self.assertNotIn("qr_token", courier_view.data["order"])
            self.assertEqual(courier_view.data["order"]["tracking"]["courier_id"], self.ids["courier"])

    def test_suggest_couriers_ranks_recent_reports(self):
        with self.app.app_context():
            oid = self._place(pickup={"latitude": 6.5244, "longitude": 3.3792}).data["orderId"]

            run_atomic(lambda: location_feed.report_location(self.ids["courier"], {"latitude": 6.53, "longitude": 3.38}))
            run_atomic(lambda: location_feed.report_location(self.ids["courier2"], {"latitude": 6.60, "longitude": 3.40}))
            outcome = order_ledger.suggest_couriers(self._actor("seller"), oid, max_distance_km=50)
            self.assertTrue(outcome.ok, outcome.to_dict())
            ids = [p["id"] for p in outcome.data["providers"]]
            self.assertEqual(ids, [self.ids["courier"], self.ids["courier2"]])

            near_only = order_ledger.suggest_couriers(self._actor("seller"), oid, max_distance_km=2)
            self.assertEqual([p["id"] for p in near_only.data["providers"]], [self.ids["courier"]])


if __name__ == "__main__":
    unittest.main()
