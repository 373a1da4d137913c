from __future__ import annotations

from handoff.config import env_str, payment_provider_name, payment_webhook_secret
from handoff.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from handoff.integrations.payments.base import PaymentsProvider
from handoff.integrations.payments.http_provider import HttpPaymentsProvider
from handoff.integrations.payments.mock_provider import MockPaymentsProvider


def build_payments_provider() -> PaymentsProvider:
    provider = payment_provider_name()
    if provider == "disabled":
        raise IntegrationDisabledError("payments")
    if provider == "mock":
        return MockPaymentsProvider()
    if provider != "http":
        raise IntegrationMisconfiguredError("payments", f"unknown provider {provider}")

    base_url = env_str("PAYMENTS_API_URL", "")
    secret_key = env_str("PAYMENTS_SECRET_KEY", "")
    missing = [name for name, value in (("PAYMENTS_API_URL", base_url), ("PAYMENTS_SECRET_KEY", secret_key)) if not value]
    if missing:
        raise IntegrationMisconfiguredError("payments", missing=missing)
    return HttpPaymentsProvider(base_url=base_url, secret_key=secret_key, callback_url=env_str("PAYMENTS_CALLBACK_URL", ""))


def payment_health() -> dict:
    provider = payment_provider_name()
    missing = []
    if provider == "http":
        for name in ("PAYMENTS_API_URL", "PAYMENTS_SECRET_KEY"):
            if not env_str(name, ""):
                missing.append(name)
    if not payment_webhook_secret() and provider != "mock":
        missing.append("PAYMENT_WEBHOOK_SECRET")
    if provider == "disabled":
        status = "disabled"
    elif missing:
        status = "misconfigured"
    else:
        status = "configured"
    return {"status": status, "provider": provider, "missing": missing}
