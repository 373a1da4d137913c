from __future__ import annotations

from handoff.config import env_str, push_provider_name
from handoff.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from handoff.integrations.push.base import PushProvider
from handoff.integrations.push.http_provider import HttpPushProvider
from handoff.integrations.push.mock_provider import MockPushProvider


def build_push_provider() -> PushProvider:
    provider = push_provider_name()
    if provider == "disabled":
        raise IntegrationDisabledError("push")
    if provider == "mock":
        return MockPushProvider()
    if provider != "http":
        raise IntegrationMisconfiguredError("push", f"unknown provider {provider}")
    url = env_str("PUSH_GATEWAY_URL", "")
    api_key = env_str("PUSH_GATEWAY_API_KEY", "")
    missing = [name for name, value in (("PUSH_GATEWAY_URL", url), ("PUSH_GATEWAY_API_KEY", api_key)) if not value]
    if missing:
        raise IntegrationMisconfiguredError("push", missing=missing)
    return HttpPushProvider(url=url, api_key=api_key)
