from __future__ import annotations


class IntegrationError(RuntimeError):
    """A payment or push integration could not be built from the environment.

    ``integration`` names the side (``payments`` or ``push``); ``str(err)``
    is the ``KIND:integration detail`` line that ends up in logs and in
    ``Notification.last_error``.
    """

    kind = "INTEGRATION_ERROR"

    def __init__(self, integration: str, detail: str = ""):
        self.integration = integration
        self.detail = detail
        line = f"{self.kind}:{integration}"
        super().__init__(f"{line} {detail}" if detail else line)


class IntegrationDisabledError(IntegrationError):
    """The operator switched the provider off with ``*_PROVIDER=disabled``.

    Wallet top-ups answer 503 and notifications stay queued; nothing is retried.
    """

    kind = "INTEGRATION_DISABLED"


class IntegrationMisconfiguredError(IntegrationError):
    """Unknown provider name, or a live provider without its URL or credentials."""

    kind = "INTEGRATION_MISCONFIGURED"

    def __init__(self, integration: str, detail: str = "", *, missing=()):
        self.missing = tuple(missing)
        if self.missing and not detail:
            detail = "missing " + ", ".join(self.missing)
        super().__init__(integration, detail)
