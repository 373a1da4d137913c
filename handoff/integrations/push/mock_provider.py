from __future__ import annotations

import os

from handoff.integrations.push.base import PushProvider, PushResult


class MockPushProvider(PushProvider):
    name = "mock"

    def __init__(self):
        self.sent: list[dict] = []

    def _force_failure(self, message: str) -> bool:
        return "[fail]" in (message or "").lower() or (os.getenv("MOCK_PUSH_FORCE_FAIL") or "").strip() == "1"

    def send(self, *, user_id: int, title: str, message: str, kind: str, data: dict | None = None, reference: str = "") -> PushResult:
        if self._force_failure(message):
            return PushResult(ok=False, code="PUSH_PROVIDER_DOWN", message="mock forced failure")
        self.sent.append({"user_id": user_id, "title": title, "message": message, "kind": kind, "data": data or {}})
        return PushResult(ok=True, code="OK", message="mock_sent", provider_ref=f"mock-{reference}")
