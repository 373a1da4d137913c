from __future__ import annotations

import os
import unittest
from unittest.mock import patch

from flask import Flask

from handoff.utils.observability import _before_send_scrub, init_sentry


class SentryOptionalInitTestCase(unittest.TestCase):
    def test_sentry_init_is_noop_without_dsn(self):
        app = Flask(__name__)
        with patch.dict(os.environ, {"SENTRY_DSN": ""}, clear=False):
            self.assertFalse(init_sentry(app))

    def test_sensitive_headers_are_scrubbed(self):
        event = {"request": {"headers": {"Authorization": "Bearer abc", "X-Payment-Signature": "sig", "Accept": "*/*"}}}
        scrubbed = _before_send_scrub(event, {})
        headers = scrubbed["request"]["headers"]
        self.assertEqual(headers["Authorization"], "[REDACTED]")
        self.assertEqual(headers["X-Payment-Signature"], "[REDACTED]")
        self.assertEqual(headers["Accept"], "*/*")

    def test_handoff_tokens_in_bodies_are_scrubbed(self):
        event = {"request": {"headers": {}, "data": {"qrToken": "secret-token", "reason": "late"}}}
        data = _before_send_scrub(event, {})["request"]["data"]
        self.assertEqual(data["qrToken"], "[REDACTED]")
        self.assertEqual(data["reason"], "late")


if __name__ == "__main__":
    unittest.main()
