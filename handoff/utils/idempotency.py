from __future__ import annotations

import hashlib
import json
from typing import Any

from flask import has_request_context, request
from sqlalchemy.exc import IntegrityError

from handoff.extensions import db
from handoff.models import IdempotencyKey


def _canonical_json(payload: Any) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def _hash_request(scope: str, user_id: int | None, payload: Any) -> str:
    raw = f"{scope}|{user_id if user_id is not None else '-'}|{_canonical_json(payload)}".encode("utf-8")
    return hashlib.sha256(raw).hexdigest()


def get_idempotency_key() -> str | None:
    if not has_request_context():
        return None
    k = request.headers.get("Idempotency-Key") or request.headers.get("X-Idempotency-Key")
    if not k:
        return None
    return k.strip()[:128] or None


def _error(code: str, message: str, status: int) -> tuple[str, dict, int]:
    return "conflict", {"ok": False, "error": code, "message": message, "status": status}, status


def lookup_response(user_id: int | None, scope: str, payload: Any, *, idempotency_key: str | None = None):
    """Resolve an Idempotency-Key before running a write.

    Returns None when no key was supplied, ("hit", body, status) for a completed
    replay, ("conflict", body, status) for reuse with another payload or a
    request still in flight, and ("miss", row, 0) when the caller should run
    the operation and then call store_response(row, ...).
    """
    key = (idempotency_key or get_idempotency_key() or "").strip()[:128]
    if not key:
        return None
    scope_key = (scope or "").strip()[:128]
    req_hash = _hash_request(scope_key, user_id, payload)

    row = IdempotencyKey.query.filter_by(scope=scope_key, key=key).first()
    if row is None:
        row = IdempotencyKey(scope=scope_key, key=key, user_id=user_id, request_hash=req_hash)
        db.session.add(row)
        try:
            db.session.commit()
            return "miss", row, 0
        except IntegrityError:
            db.session.rollback()
            row = IdempotencyKey.query.filter_by(scope=scope_key, key=key).first()
            if row is None:
                raise

    if row.request_hash != req_hash:
        return _error(
            "IDEMPOTENCY_KEY_REUSE",
            "This Idempotency-Key was already used with a different request payload.",
            409,
        )
    if not row.completed:
        return _error("IDEMPOTENCY_IN_PROGRESS", "A request with this Idempotency-Key is still in progress.", 409)
    try:
        body = json.loads(row.response_json or "{}")
    except ValueError:
        body = {"ok": True}
    return "hit", body, int(row.status_code or 200)


def store_response(row: IdempotencyKey, response_json: Any, status_code: int) -> None:
    row.response_json = json.dumps(response_json, separators=(",", ":"), default=str)
    row.status_code = int(status_code or 200)
    db.session.add(row)
    db.session.commit()
