from __future__ import annotations

from dataclasses import dataclass


@dataclass
class PaymentInitializeResult:
    authorization_url: str
    reference: str
    provider: str
    raw: dict | None = None


@dataclass
class PaymentVerifyResult:
    status: str
    amount_minor: int
    currency: str
    transaction_id: str = ""
    raw: dict | None = None


class PaymentsProvider:
    name = "unknown"

    def initialize(self, *, amount_minor: int, currency: str, email: str, reference: str, metadata: dict | None = None) -> PaymentInitializeResult:
        raise NotImplementedError

    def verify(self, reference: str) -> PaymentVerifyResult:
        raise NotImplementedError
