from __future__ import annotations

import importlib
import os
import unittest
from unittest.mock import patch


class ImportsBootTestCase(unittest.TestCase):
    def test_import_create_app(self):
        module = importlib.import_module("handoff")
        create_app = getattr(module, "create_app", None)
        self.assertTrue(callable(create_app))

    def test_import_segments(self):
        for name in (
            "handoff.segments.segment_orders",
            "handoff.segments.segment_wallets",
            "handoff.segments.segment_payment_webhooks",
            "handoff.segments.segment_locations",
            "handoff.segments.segment_notifications",
            "handoff.segments.segment_admin",
        ):
            self.assertIsNotNone(importlib.import_module(name))

    def test_task_retry_backoff_is_capped(self):
        from handoff.tasks.settlement_tasks import retry_countdown

        self.assertEqual([retry_countdown(n) for n in range(4)], [5, 10, 20, 40])
        self.assertEqual(retry_countdown(12), 900)

    def test_celery_app_schedules_expiry_sweep(self):
        from handoff import create_app
        from handoff.celery_app import create_celery_app

        env = {
            "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
            "DATABASE_URL": "sqlite:///:memory:",
            "CELERY_BROKER_URL": "memory://",
            "CELERY_RESULT_BACKEND": "cache+memory://",
            "EXPIRY_SWEEP_INTERVAL_SECONDS": "120",
        }
        with patch.dict(os.environ, env):
            celery = create_celery_app(create_app())
        entry = celery.conf.beat_schedule["expiry-sweep-runner"]
        self.assertEqual(entry["task"], "handoff.tasks.settlement_tasks.run_expiry_sweep")
        self.assertEqual(entry["schedule"], 120.0)
        self.assertEqual(celery.conf.broker_url, "memory://")
        routes = celery.conf.task_routes
        self.assertEqual(routes["handoff.tasks.settlement_tasks.process_payment_webhook"]["queue"], "webhooks")
        self.assertEqual(routes["handoff.tasks.settlement_tasks.dispatch_notification"]["queue"], "notifications")

    def test_production_boot_requires_webhook_secret(self):
        from handoff import create_app

        env = {
            "HANDOFF_ENV": "production",
            "SECRET_KEY": "a-production-secret-key",
            "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
            "DATABASE_URL": "sqlite:///:memory:",
            "PAYMENTS_PROVIDER": "http",
            "PAYMENT_WEBHOOK_SECRET": "",
            "SENTRY_DSN": "",
            "REDIS_URL": "",
            "RATE_LIMIT_REDIS_URL": "",
        }
        with patch.dict(os.environ, env):
            with self.assertRaises(RuntimeError) as ctx:
                create_app()
            self.assertIn("PAYMENT_WEBHOOK_SECRET", str(ctx.exception))

            os.environ["PAYMENT_WEBHOOK_SECRET"] = "whsec_live"
            self.assertIsNotNone(create_app())

    def test_integration_errors_name_the_integration(self):
        from handoff.integrations.payments.factory import build_payments_provider
        from handoff.integrations.push.factory import build_push_provider
        from handoff.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError

        with patch.dict(os.environ, {"PAYMENTS_PROVIDER": "http", "PAYMENTS_API_URL": "", "PAYMENTS_SECRET_KEY": ""}):
            with self.assertRaises(IntegrationMisconfiguredError) as ctx:
                build_payments_provider()
        err = ctx.exception
        self.assertEqual(err.integration, "payments")
        self.assertEqual(err.missing, ("PAYMENTS_API_URL", "PAYMENTS_SECRET_KEY"))
        self.assertEqual(str(err), "INTEGRATION_MISCONFIGURED:payments missing PAYMENTS_API_URL, PAYMENTS_SECRET_KEY")

        with patch.dict(os.environ, {"PUSH_PROVIDER": "disabled"}):
            with self.assertRaises(IntegrationDisabledError) as ctx:
                build_push_provider()
        self.assertEqual(str(ctx.exception), "INTEGRATION_DISABLED:push")

        with patch.dict(os.environ, {"PUSH_PROVIDER": "carrier-pigeon"}):
            with self.assertRaises(IntegrationMisconfiguredError) as ctx:
                build_push_provider()
        self.assertEqual(ctx.exception.missing, ())
        self.assertIn("unknown provider carrier-pigeon", str(ctx.exception))


if __name__ == "__main__":
    unittest.main()
