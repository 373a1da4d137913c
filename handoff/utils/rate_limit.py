from __future__ import annotations

import logging
import threading
import time

import redis

from handoff.config import env_bool, env_str
from handoff.errors import RateLimited

logger = logging.getLogger(__name__)


class CounterStore:
    """Fixed-window counter backend shared by every worker that enforces limits."""

    name = "unknown"

    def incr(self, key: str, ttl_seconds: int) -> int:
        raise NotImplementedError


class RedisCounterStore(CounterStore):
    name = "redis"

    def __init__(self, client):
        self.client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisCounterStore":
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=0.75,
            socket_timeout=0.75,
            health_check_interval=30,
        )
        return cls(client)

    def incr(self, key: str, ttl_seconds: int) -> int:
        current = int(self.client.incr(key))
        if current == 1:
            self.client.expire(key, int(ttl_seconds))
        return current


class MemoryCounterStore(CounterStore):
    """In-process counters. Only correct for a single process (dev, tests)."""

    name = "memory"

    def __init__(self):
        self._lock = threading.Lock()
        self._counters: dict[str, tuple[int, float]] = {}

    def incr(self, key: str, ttl_seconds: int) -> int:
        now = time.time()
        with self._lock:
            count, expires = self._counters.get(key, (0, 0.0))
            if expires <= now:
                count, expires = 0, now + int(ttl_seconds)
            count += 1
            self._counters[key] = (count, expires)
            if len(self._counters) > 50000:
                self._counters = {k: v for k, v in self._counters.items() if v[1] > now}
            return count

    def clear(self) -> None:
        with self._lock:
            self._counters.clear()


def rate_limit_enabled(default: bool = True) -> bool:
    return env_bool("RATE_LIMIT_ENABLED", default)


def trust_proxy_headers(default: bool = False) -> bool:
    return env_bool("TRUST_PROXY_HEADERS", default)


def build_counter_store(url: str | None = None) -> CounterStore:
    target = (url if url is not None else env_str("RATE_LIMIT_REDIS_URL", env_str("REDIS_URL", ""))).strip()
    if target:
        logger.info("rate_limit_store backend=redis")
        return RedisCounterStore.from_url(target)
    logger.warning("rate_limit_store backend=memory single_process_only=true")
    return MemoryCounterStore()


def check_limit(store: CounterStore, key: str, *, limit: int, window_seconds: int, now: float | None = None) -> tuple[bool, int]:
    safe_window = max(1, int(window_seconds))
    safe_limit = max(1, int(limit))
    now_sec = int(now if now is not None else time.time())
    window_epoch = now_sec // safe_window
    counter_key = f"rl:v1:{key}:{window_epoch}"
    current = store.incr(counter_key, safe_window + 1)
    if current <= safe_limit:
        return True, 0
    retry_after = int(max(1, safe_window - (now_sec % safe_window)))
    return False, retry_after


def resolve_client_ip(request, *, trusted_proxy: bool = True) -> str:
    if trusted_proxy:
        xff = (request.headers.get("X-Forwarded-For") or "").strip()
        if xff:
            first_hop = (xff.split(",")[0] or "").strip()
            if first_hop:
                return first_hop
        x_real_ip = (request.headers.get("X-Real-IP") or "").strip()
        if x_real_ip:
            return x_real_ip
    return (request.remote_addr or "").strip() or "unknown"


def build_rate_limit_subject(*, user_id: int | None, request_obj, trusted_proxy: bool | None = None) -> str:
    if user_id is not None:
        return f"u:{int(user_id)}"
    trusted = trust_proxy_headers(False) if trusted_proxy is None else bool(trusted_proxy)
    return f"ip:{resolve_client_ip(request_obj, trusted_proxy=trusted)}"


# (tier, requests per minute). Webhook callers are keyed by IP.
WEBHOOK_TIER = ("webhook", 300)
READ_TIER = ("browse", 120)
WRITE_TIER = ("write", 60)
EXEMPT_PATHS = {"/api/health"}


def tier_for(method: str, path: str) -> tuple[str, int] | None:
    if method == "OPTIONS" or not path.startswith("/api/") or path in EXEMPT_PATHS:
        return None
    if path.startswith("/api/webhooks/"):
        return WEBHOOK_TIER
    return READ_TIER if method in ("GET", "HEAD") else WRITE_TIER


def enforce(store: CounterStore, request_obj, *, user_id: int | None) -> None:
    """Count the request against its tier; raise RateLimited once the window is spent."""
    method = (request_obj.method or "GET").upper()
    path = request_obj.path or ""
    tier = tier_for(method, path)
    if tier is None:
        return
    name, limit = tier
    subject = build_rate_limit_subject(user_id=None if name == "webhook" else user_id, request_obj=request_obj)
    key = f"tier:{name}:{path}:{subject}" if name == "webhook" else f"tier:{name}:{method}:{path}:{subject}"
    ok, retry_after = check_limit(store, key, limit=limit, window_seconds=60)
    if not ok:
        raise RateLimited(retry_after)
