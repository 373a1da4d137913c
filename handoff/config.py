from __future__ import annotations

import os


def env_str(name: str, default: str = "") -> str:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip() or default


def env_bool(name: str, default: bool) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return bool(default)
    return raw in ("1", "true", "yes", "on")


def env_int(name: str, default: int, *, minimum: int = 0, maximum: int | None = None) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        value = int(default)
    else:
        try:
            value = int(raw)
        except ValueError:
            value = int(default)
    if value < minimum:
        value = minimum
    if maximum is not None and value > maximum:
        value = maximum
    return value


def env_float(name: str, default: float, *, minimum: float = 0.0, maximum: float | None = None) -> float:
    raw = (os.getenv(name) or "").strip()
    try:
        value = float(raw) if raw else float(default)
    except ValueError:
        value = float(default)
    if value < minimum:
        value = minimum
    if maximum is not None and value > maximum:
        value = maximum
    return value


def runtime_env() -> str:
    return env_str("HANDOFF_ENV", "dev").lower()


def is_production() -> bool:
    return runtime_env() in ("prod", "production")


# Fees

def platform_fee_bps() -> int:
    return env_int("PLATFORM_FEE_BPS", 100, minimum=0, maximum=10000)


def affiliate_share_bps() -> int:
    return env_int("AFFILIATE_SHARE_BPS", 5000, minimum=0, maximum=10000)


def transfer_fee_bps() -> int:
    return env_int("TRANSFER_FEE_BPS", 100, minimum=0, maximum=10000)


def transfer_fee_minimum_minor() -> int:
    return env_int("TRANSFER_FEE_MINIMUM_MINOR", 1, minimum=0)


# Orders and escrow

ORDER_LIFETIME_MONTHS = 3


def expired_order_policy() -> str:
    policy = env_str("EXPIRED_ORDER_POLICY", "refund").lower()
    if policy not in ("refund", "forfeit"):
        return "refund"
    return policy


def expiry_sweep_limit() -> int:
    return env_int("EXPIRY_SWEEP_LIMIT", 200, minimum=1, maximum=5000)


def expiry_sweep_interval_seconds() -> int:
    return env_int("EXPIRY_SWEEP_INTERVAL_SECONDS", 300, minimum=30)


def topup_ttl_hours() -> int:
    return env_int("TOPUP_TTL_HOURS", 24, minimum=1, maximum=24 * 30)


def wallet_cas_max_attempts() -> int:
    return env_int("WALLET_CAS_MAX_ATTEMPTS", 4, minimum=1, maximum=20)


def wallet_cas_backoff_ms() -> int:
    return env_int("WALLET_CAS_BACKOFF_MS", 25, minimum=0, maximum=5000)


# Location feed

def location_staleness_seconds() -> int:
    return env_int("LOCATION_STALENESS_SECONDS", 15 * 60, minimum=1)


def default_match_radius_km() -> float:
    return env_float("MATCH_RADIUS_KM", 10.0, minimum=0.1, maximum=20000.0)


# Integrations

def payment_provider_name() -> str:
    return env_str("PAYMENTS_PROVIDER", "mock").lower()


def payment_webhook_secret() -> str:
    return env_str("PAYMENT_WEBHOOK_SECRET", "")


def payment_webhook_queue() -> bool:
    return env_bool("PAYMENT_WEBHOOK_QUEUE", False)


def push_provider_name() -> str:
    return env_str("PUSH_PROVIDER", "mock").lower()


def notifications_async() -> bool:
    return env_bool("NOTIFICATIONS_ASYNC", False)
