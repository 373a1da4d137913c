from __future__ import annotations

from flask import Blueprint, jsonify, request

from handoff.jobs.expiry_sweep import run_expiry_sweep
from handoff.services import order_ledger
from handoff.services.reconciliation_service import latest_report, persist_report, recompute_wallet_balances
from handoff.utils.actors import current_actor
from handoff.utils.observability import get_request_id

admin_bp = Blueprint("admin_bp", __name__, url_prefix="/api/admin")


def _require_admin():
    actor = current_actor()
    if not actor:
        return None, (jsonify({"message": "Unauthorized"}), 401)
    if not actor.is_admin:
        return None, (jsonify({"ok": False, "error": "FORBIDDEN", "message": "Admin only", "status": 403}), 403)
    return actor, None


@admin_bp.post("/orders/expire")
def expire_orders():
    actor, denied = _require_admin()
    if denied:
        return denied
    data = request.get_json(silent=True) or {}
    try:
        limit = int(data.get("limit")) if data.get("limit") is not None else None
    except (TypeError, ValueError):
        return jsonify({"ok": False, "error": "VALIDATION_ERROR", "message": "limit must be an integer", "status": 400}), 400
    result = run_expiry_sweep(limit=limit)
    return jsonify(result), 200


@admin_bp.post("/reconcile")
def reconcile_wallets():
    actor, denied = _require_admin()
    if denied:
        return denied
    data = request.get_json(silent=True) or {}
    summary = recompute_wallet_balances(currency=(data.get("currency") or None))
    if bool(data.get("persist", True)):
        row = persist_report(summary, created_by=int(actor.user_id))
        summary["report_id"] = int(row.id)
    return jsonify(summary), 200


@admin_bp.get("/reconcile/latest")
def latest_reconciliation():
    actor, denied = _require_admin()
    if denied:
        return denied
    report = latest_report()
    if report is None:
        return jsonify({"ok": True, "report": None}), 200
    return jsonify({"ok": True, "report": report}), 200


@admin_bp.post("/orders/<int:order_id>/dispute/resolve")
def resolve_dispute(order_id: int):
    actor, denied = _require_admin()
    if denied:
        return denied
    data = request.get_json(silent=True) or {}
    outcome = order_ledger.resolve_dispute(actor, order_id, str(data.get("resolution") or ""), str(data.get("note") or ""))
    body = outcome.to_dict()
    if not outcome.ok:
        body["trace_id"] = get_request_id()
    return jsonify(body), int(outcome.status)
