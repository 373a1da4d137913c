from __future__ import annotations

from handoff.integrations.payments.base import PaymentInitializeResult, PaymentsProvider, PaymentVerifyResult


class MockPaymentsProvider(PaymentsProvider):
    name = "mock"

    def initialize(self, *, amount_minor: int, currency: str, email: str, reference: str, metadata: dict | None = None) -> PaymentInitializeResult:
        url = f"https://example.com/mock/pay?reference={reference}&amount={int(amount_minor)}&currency={currency}"
        return PaymentInitializeResult(
            authorization_url=url,
            reference=reference,
            provider=self.name,
            raw={"amount": int(amount_minor), "currency": currency, "email": email, "metadata": metadata or {}},
        )

    def verify(self, reference: str) -> PaymentVerifyResult:
        return PaymentVerifyResult(
            status="success",
            amount_minor=0,
            currency="",
            transaction_id=f"mock-{reference}",
            raw={"reference": reference, "provider": self.name},
        )
