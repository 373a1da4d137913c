from __future__ import annotations

from dataclasses import dataclass, field


class HandoffError(Exception):
    """Base class for business failures raised inside a unit of work.

    Each subclass carries a stable ``code`` used in API responses and an HTTP
    ``status`` the segments map it to.
    """

    code = "HANDOFF_ERROR"
    status = 400

    def __init__(self, message: str = "", **details):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details

    def to_dict(self) -> dict:
        payload = {"ok": False, "error": self.code, "message": self.message, "status": int(self.status)}
        if self.details:
            payload["details"] = dict(self.details)
        return payload


class ValidationError(HandoffError):
    code = "VALIDATION_ERROR"
    status = 400


class InvalidItems(ValidationError):
    code = "INVALID_ITEMS"


class SellerMismatch(ValidationError):
    code = "SELLER_MISMATCH"


class WalletFrozen(ValidationError):
    code = "WALLET_FROZEN"


class InsufficientFunds(HandoffError):
    code = "INSUFFICIENT_FUNDS"
    status = 409


class InvalidToken(HandoffError):
    code = "INVALID_TOKEN"
    status = 400


class RoleMismatch(HandoffError):
    code = "ROLE_MISMATCH"
    status = 403


class AlreadyConsumed(HandoffError):
    code = "ALREADY_CONSUMED"
    status = 409


class WrongStage(HandoffError):
    code = "WRONG_STAGE"
    status = 409


class NotFoundError(HandoffError):
    code = "NOT_FOUND"
    status = 404


class OrderNotFound(NotFoundError):
    code = "ORDER_NOT_FOUND"


class ConflictError(HandoffError):
    code = "CONFLICT"
    status = 409


class EscrowDisputed(ConflictError):
    code = "ESCROW_DISPUTED"


class ExternalServiceError(HandoffError):
    code = "EXTERNAL_SERVICE_ERROR"
    status = 502


class InvalidSignature(ExternalServiceError):
    code = "INVALID_SIGNATURE"
    status = 401


class RateLimited(HandoffError):
    code = "RATE_LIMITED"
    status = 429

    def __init__(self, retry_after_seconds: int):
        retry_after = max(1, int(retry_after_seconds or 1))
        super().__init__("too many requests", retry_after_seconds=retry_after)
        self.retry_after_seconds = retry_after


@dataclass
class Outcome:
    """Explicit result of a ledger operation.

    ``ok`` is False for business failures; ``code`` then names the failure kind
    so callers can branch without catching exceptions.
    """

    ok: bool
    code: str = "OK"
    message: str = ""
    status: int = 200
    data: dict = field(default_factory=dict)

    @classmethod
    def success(cls, data: dict | None = None, *, status: int = 200, message: str = "") -> "Outcome":
        return cls(ok=True, code="OK", message=message, status=status, data=dict(data or {}))

    @classmethod
    def failure(cls, error: HandoffError) -> "Outcome":
        return cls(
            ok=False,
            code=error.code,
            message=error.message,
            status=int(error.status),
            data=dict(error.details or {}),
        )

    def to_dict(self) -> dict:
        if self.ok:
            return {"ok": True, **self.data}
        payload = {"ok": False, "error": self.code, "message": self.message, "status": int(self.status)}
        if self.data:
            payload["details"] = dict(self.data)
        return payload
