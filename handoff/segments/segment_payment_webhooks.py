from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from handoff.extensions import db
from handoff.services import webhook_reconciler
from handoff.utils.observability import get_request_id

webhooks_bp = Blueprint("webhooks_bp", __name__, url_prefix="/api/webhooks")


@webhooks_bp.post("/payments")
def payment_webhook():
    raw = request.get_data() or b""
    signature = request.headers.get("X-Payment-Signature")
    try:
        body, status = webhook_reconciler.receive(raw, signature, request_id=get_request_id())
    except Exception:
        db.session.rollback()
        current_app.logger.exception("payment_webhook_route_failed")
        # Not durably recorded: a 5xx makes the provider deliver again.
        return jsonify({"ok": False, "error": "WEBHOOK_HANDLER_FAILED", "status": 500, "trace_id": get_request_id()}), 500
    if not body.get("ok"):
        body.setdefault("trace_id", get_request_id())
    return jsonify(body), int(status)
