from __future__ import annotations

import hashlib
import json
import time
import uuid
from datetime import datetime

import sentry_sdk
from flask import g, request
from sentry_sdk.integrations.flask import FlaskIntegration

from handoff.config import env_float, env_str, runtime_env


def _hash_ip(ip: str, salt: str) -> str:
    raw = f"{salt}:{ip or ''}".encode("utf-8")
    return hashlib.sha256(raw).hexdigest()[:16]


def get_request_id() -> str:
    return getattr(g, "request_id", "") or ""


def init_sentry(app) -> bool:
    dsn = env_str("SENTRY_DSN", "")
    if not dsn:
        app.logger.info("sentry_disabled_no_dsn")
        return False
    sentry_sdk.init(
        dsn=dsn,
        environment=env_str("SENTRY_ENVIRONMENT", runtime_env()),
        release=env_str("GIT_SHA", "unknown"),
        integrations=[FlaskIntegration()],
        send_default_pii=False,
        traces_sample_rate=env_float("SENTRY_TRACES_SAMPLE_RATE", 0.0, minimum=0.0, maximum=1.0),
        before_send=_before_send_scrub,
    )
    app.logger.info("sentry_enabled")
    return True


REDACTED = "[REDACTED]"
SENSITIVE_HEADERS = {"authorization", "x-payment-signature", "cookie", "set-cookie"}
SENSITIVE_FIELDS = {"qrToken", "qr_token", "token"}


def _before_send_scrub(event, hint):
    req = event.get("request") or {}
    headers = req.get("headers") or {}
    for key in list(headers.keys()):
        if key.lower() in SENSITIVE_HEADERS:
            headers[key] = REDACTED
    req["headers"] = headers
    # QR handoff tokens sent in JSON bodies.
    data = req.get("data")
    if isinstance(data, dict):
        req["data"] = {k: (REDACTED if k in SENSITIVE_FIELDS else v) for k, v in data.items()}
    event["request"] = req
    return event


def _client_ip() -> str:
    forwarded = (request.headers.get("X-Forwarded-For") or "").split(",")[0].strip()
    return forwarded or request.remote_addr or ""


def access_log_line(response, *, salt: str) -> dict:
    """One JSON-able access record; the caller identity comes from the resolved actor."""
    began = getattr(g, "request_started_at", None)
    actor = getattr(g, "actor", None)
    role = getattr(actor, "role", None)
    return {
        "ts": datetime.utcnow().isoformat(),
        "request_id": get_request_id(),
        "method": request.method,
        "path": request.path,
        "status": response.status_code,
        "latency_ms": None if began is None else round((time.perf_counter() - began) * 1000, 2),
        "user_id": getattr(actor, "user_id", None),
        "role": role.value if role is not None else None,
        "ip_hash": _hash_ip(_client_ip(), salt),
        "ua": (request.user_agent.string or "")[:180],
    }


def install_request_observers(app) -> None:
    @app.before_request
    def _assign_request_id():
        g.request_id = (request.headers.get("X-Request-Id") or "").strip()[:64] or str(uuid.uuid4())
        g.request_started_at = time.perf_counter()

    @app.after_request
    def _emit_access_log(response):
        if not get_request_id():
            g.request_id = str(uuid.uuid4())
        response.headers["X-Request-Id"] = get_request_id()
        app.logger.info(json.dumps(access_log_line(response, salt=app.config.get("SECRET_KEY", "handoff"))))
        return response
