from __future__ import annotations

import os
import unittest
from datetime import datetime, timedelta
from unittest.mock import patch

from handoff import create_app
from handoff.extensions import db
from handoff.jobs.expiry_sweep import run_expiry_sweep
from handoff.models import JobRun, Order, OrderEvent, Product, User, Wallet, WalletTransaction
from handoff.services import escrow_wallet, order_ledger
from handoff.services.unit_of_work import run_atomic
from handoff.utils.actors import Actor


class ExpirySweepTestCase(unittest.TestCase):
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
        self._env = patch.dict(os.environ, {"PLATFORM_FEE_BPS": "100", "AFFILIATE_SHARE_BPS": "5000", "TOPUP_TTL_HOURS": "24"})
        self._env.start()
        with self.app.app_context():
            db.session.remove()
            db.drop_all()
            db.create_all()
            buyer = User(name="Buyer", email="buyer@handoff.test", role="buyer")
            seller = User(name="Seller", email="seller@handoff.test", role="seller")
            courier = User(name="Courier", email="courier@handoff.test", role="courier")
            db.session.add_all([buyer, seller, courier])
            db.session.flush()
            product = Product(seller_id=int(seller.id), title="Phone case", unit_price_minor=2500, currency="NGN")
            db.session.add(product)
            db.session.commit()
            self.buyer = Actor(user_id=int(buyer.id), role=buyer.role_enum)
            self.courier = Actor(user_id=int(courier.id), role=courier.role_enum)
            self.seller_id = int(seller.id)
            self.product_id = int(product.id)
            run_atomic(lambda: escrow_wallet.fund(int(buyer.id), 50000, "NGN", "seed"))
            run_atomic(lambda: escrow_wallet.settle("seed", success=True))

    def tearDown(self):
        self._env.stop()

    def _place(self) -> dict:
        outcome = order_ledger.place_order(
            self.buyer,
            {"sellerId": self.seller_id, "currency": "NGN", "items": [{"productId": self.product_id, "quantity": 4}]},
        )
        self.assertTrue(outcome.ok, outcome.to_dict())
        return outcome.data

    def _buyer_balance(self) -> int:
        return int(escrow_wallet.find_user_wallet(int(self.buyer.user_id), "NGN").balance_minor)

    def _after_expiry(self, order_id: int) -> datetime:
        return db.session.get(Order, order_id).expires_at + timedelta(days=1)

    def test_nothing_expires_before_the_deadline(self):
        with self.app.app_context():
            self._place()
            result = run_expiry_sweep()
            self.assertTrue(result["ok"])
            self.assertEqual(result["expired"], 0)

    def test_expired_orders_are_refunded_by_default(self):
        with patch.dict(os.environ, {"EXPIRED_ORDER_POLICY": "refund"}):
            with self.app.app_context():
                placed = self._place()
                picked = self._place()
                self.assertTrue(order_ledger.confirm_pickup(self.courier, picked["orderId"], picked["qrToken"]).ok)
                self.assertEqual(self._buyer_balance(), 50000 - 2 * 10100)

                later = self._after_expiry(placed["orderId"])
                result = run_expiry_sweep(now=later)
                self.assertTrue(result["ok"], result)
                self.assertEqual(result["policy"], "refund")
                self.assertEqual(result["expired"], 2)
                self.assertEqual(self._buyer_balance(), 50000)

                for oid in (placed["orderId"], picked["orderId"]):
                    order = db.session.get(Order, oid)
                    self.assertEqual(order.status, "CANCELLED")
                    self.assertEqual(order.escrow_status, "REFUNDED")
                    self.assertEqual(OrderEvent.query.filter_by(order_id=oid, event="expired").count(), 1)

                again = run_expiry_sweep(now=later)
                self.assertEqual(again["expired"], 0)
                self.assertEqual(self._buyer_balance(), 50000)

    def test_forfeit_policy_moves_hold_to_platform(self):
        with patch.dict(os.environ, {"EXPIRED_ORDER_POLICY": "forfeit"}):
            with self.app.app_context():
                placed = self._place()
                result = run_expiry_sweep(now=self._after_expiry(placed["orderId"]))
                self.assertEqual(result["policy"], "forfeit")
                self.assertEqual(result["expired"], 1)
                platform = Wallet.query.filter_by(owner_key="platform", currency="NGN").first()
                self.assertEqual(int(platform.balance_minor), 10100)
                self.assertEqual(self._buyer_balance(), 50000 - 10100)
                self.assertEqual(db.session.get(Order, placed["orderId"]).escrow_status, "FORFEITED")

    def test_expired_token_no_longer_works(self):
        with self.app.app_context():
            placed = self._place()
            run_expiry_sweep(now=self._after_expiry(placed["orderId"]))
            outcome = order_ledger.confirm_pickup(self.courier, placed["orderId"], placed["qrToken"])
            self.assertEqual(outcome.code, "INVALID_TOKEN")

    def test_delivered_orders_are_left_alone(self):
        with self.app.app_context():
            placed = self._place()
            oid, token = placed["orderId"], placed["qrToken"]
            order_ledger.confirm_pickup(self.courier, oid, token)
            order_ledger.confirm_delivery(self.buyer, oid, token)
            result = run_expiry_sweep(now=self._after_expiry(oid))
            self.assertEqual(result["scanned"], 0)
            self.assertEqual(db.session.get(Order, oid).status, "DELIVERED")

    def test_stale_pending_topup_is_cancelled(self):
        with self.app.app_context():
            run_atomic(lambda: escrow_wallet.fund(int(self.buyer.user_id), 3000, "NGN", "late-topup"))
            early = run_expiry_sweep(now=datetime.utcnow() + timedelta(hours=1))
            self.assertEqual(early["topups_cancelled"], 0)

            result = run_expiry_sweep(now=datetime.utcnow() + timedelta(hours=25))
            self.assertEqual(result["topups_cancelled"], 1)
            txn = WalletTransaction.query.filter_by(external_ref="late-topup").first()
            self.assertEqual(txn.status, "cancelled")
            self.assertEqual(run_atomic(lambda: escrow_wallet.settle("late-topup", success=True)), "ignored")
            self.assertEqual(self._buyer_balance(), 50000)

    def test_each_sweep_records_a_job_run(self):
        with self.app.app_context():
            run_expiry_sweep()
            run_expiry_sweep()
            rows = JobRun.query.filter_by(job_name="expiry_sweep").all()
            self.assertEqual(len(rows), 2)
            self.assertTrue(all(row.ok for row in rows))


if __name__ == "__main__":
    unittest.main()
