from __future__ import annotations

import requests

from handoff.integrations.push.base import PushProvider, PushResult


def _map_gateway_error(status: int) -> str:
    if status in (401, 403):
        return "PUSH_AUTH_FAILED"
    if status == 429:
        return "PUSH_RATE_LIMITED"
    if status in (400, 404, 422):
        return "PUSH_INVALID_RECIPIENT"
    return "PUSH_PROVIDER_DOWN"


class HttpPushProvider(PushProvider):
    """Posts notifications to an HTTP push gateway that fans out to devices."""

    name = "http"

    def __init__(self, *, url: str, api_key: str, timeout: float = 10.0):
        self.url = url
        self.api_key = api_key
        self.timeout = timeout

    def send(self, *, user_id: int, title: str, message: str, kind: str, data: dict | None = None, reference: str = "") -> PushResult:
        payload = {
            "user_id": str(user_id),
            "title": title,
            "message": message,
            "type": kind,
            "data": data or {},
            "reference": reference,
        }
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        try:
            r = requests.post(self.url, json=payload, headers=headers, timeout=self.timeout)
        except requests.Timeout:
            return PushResult(ok=False, code="PUSH_PROVIDER_DOWN", message="timeout")
        except requests.RequestException as e:
            return PushResult(ok=False, code="PUSH_PROVIDER_DOWN", message=str(e)[:200])
        try:
            body = r.json() if r.content else {}
        except ValueError:
            body = {}
        if 200 <= r.status_code < 300:
            ref = str((body or {}).get("id") or reference) if isinstance(body, dict) else reference
            return PushResult(ok=True, code="OK", message="sent", provider_ref=ref, raw=body if isinstance(body, dict) else None)
        detail = str(body.get("message") or "") if isinstance(body, dict) else ""
        return PushResult(
            ok=False,
            code=_map_gateway_error(r.status_code),
            message=(detail or f"http_{r.status_code}")[:200],
            raw=body if isinstance(body, dict) else None,
        )
