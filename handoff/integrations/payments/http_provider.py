from __future__ import annotations

import requests

from handoff.integrations.payments.base import PaymentInitializeResult, PaymentsProvider, PaymentVerifyResult


class HttpPaymentsProvider(PaymentsProvider):
    """Hosted-checkout payment gateway speaking JSON over HTTPS.

    ``initialize`` opens a checkout session for a top-up reference; the
    gateway later reports the result to ``/api/webhooks/payments``.
    """

    name = "http"

    def __init__(self, *, base_url: str, secret_key: str, callback_url: str = "", timeout: float = 25.0):
        self.base_url = base_url.rstrip("/")
        self.secret_key = secret_key
        self.callback_url = callback_url
        self.timeout = timeout

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.secret_key}", "Content-Type": "application/json"}

    def initialize(self, *, amount_minor: int, currency: str, email: str, reference: str, metadata: dict | None = None) -> PaymentInitializeResult:
        payload = {
            "amount": int(amount_minor),
            "currency": currency,
            "email": email,
            "reference": reference,
            "metadata": metadata or {},
        }
        if self.callback_url:
            payload["callback_url"] = self.callback_url
        r = requests.post(f"{self.base_url}/transactions/initialize", headers=self._headers(), json=payload, timeout=self.timeout)
        j = r.json() if r.content else {}
        if r.status_code < 200 or r.status_code >= 300 or not isinstance(j, dict):
            msg = (j.get("message") if isinstance(j, dict) else "") or f"HTTP {r.status_code}"
            raise RuntimeError(f"PAYMENT_INIT_FAILED:{str(msg).strip()}")
        data = j.get("data") or {}
        return PaymentInitializeResult(
            authorization_url=str(data.get("authorization_url") or "").strip(),
            reference=str(data.get("reference") or reference).strip(),
            provider=self.name,
            raw=j,
        )

    def verify(self, reference: str) -> PaymentVerifyResult:
        ref = (reference or "").strip()
        r = requests.get(f"{self.base_url}/transactions/verify/{ref}", headers=self._headers(), timeout=self.timeout)
        j = r.json() if r.content else {}
        if r.status_code < 200 or r.status_code >= 300 or not isinstance(j, dict):
            msg = (j.get("message") if isinstance(j, dict) else "") or f"HTTP {r.status_code}"
            raise RuntimeError(f"PAYMENT_VERIFY_FAILED:{str(msg).strip()}")
        data = j.get("data") or {}
        try:
            amount = int(data.get("amount") or 0)
        except (TypeError, ValueError):
            amount = 0
        return PaymentVerifyResult(
            status=str(data.get("status") or "").strip().lower(),
            amount_minor=amount,
            currency=str(data.get("currency") or "").strip().upper(),
            transaction_id=str(data.get("transaction_id") or data.get("id") or "").strip(),
            raw=j,
        )
