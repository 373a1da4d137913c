from __future__ import annotations

from flask import Blueprint, jsonify, request

from handoff.services import order_ledger
from handoff.utils.actors import current_actor
from handoff.utils.idempotency import lookup_response, store_response
from handoff.utils.observability import get_request_id

orders_bp = Blueprint("orders_bp", __name__, url_prefix="/api")


def _render(outcome):
    body = outcome.to_dict()
    if not outcome.ok:
        body["trace_id"] = get_request_id()
    return jsonify(body), int(outcome.status)


def _float_arg(name: str):
    raw = (request.args.get(name) or "").strip()
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError:
        return "invalid"


@orders_bp.post("/orders")
def place_order():
    actor = current_actor()
    if not actor:
        return jsonify({"message": "Unauthorized"}), 401

    data = request.get_json(silent=True) or {}
    idem = lookup_response(int(actor.user_id), "/api/orders", data)
    if idem and idem[0] in ("hit", "conflict"):
        return jsonify(idem[1]), idem[2]
    idem_row = idem[1] if idem and idem[0] == "miss" else None

    outcome = order_ledger.place_order(actor, data)
    body = outcome.to_dict()
    if not outcome.ok:
        body["trace_id"] = get_request_id()
    if idem_row is not None:
        store_response(idem_row, body, outcome.status)
    return jsonify(body), int(outcome.status)


@orders_bp.get("/orders/<int:order_id>")
def get_order(order_id: int):
    actor = current_actor()
    if not actor:
        return jsonify({"message": "Unauthorized"}), 401
    return _render(order_ledger.get_order(actor, order_id))


@orders_bp.post("/orders/<int:order_id>/courier")
def assign_courier(order_id: int):
    actor = current_actor()
    if not actor:
        return jsonify({"message": "Unauthorized"}), 401
    data = request.get_json(silent=True) or {}
    return _render(order_ledger.assign_courier(actor, order_id, data.get("courierId", data.get("courier_id"))))


@orders_bp.get("/orders/<int:order_id>/couriers")
def suggest_couriers(order_id: int):
    actor = current_actor()
    if not actor:
        return jsonify({"message": "Unauthorized"}), 401
    lat = _float_arg("lat")
    lng = _float_arg("lng")
    max_km = _float_arg("max_km")
    if "invalid" in (lat, lng, max_km):
        return jsonify({"ok": False, "error": "VALIDATION_ERROR", "message": "lat, lng and max_km must be numbers", "status": 400, "trace_id": get_request_id()}), 400
    origin = (lat, lng) if lat is not None and lng is not None else None
    return _render(
        order_ledger.suggest_couriers(
            actor,
            order_id,
            origin=origin,
            max_distance_km=max_km,
            role=(request.args.get("role") or "").strip() or None,
        )
    )


def _token_from_body() -> str:
    data = request.get_json(silent=True) or {}
    return str(data.get("qrToken") or data.get("token") or "").strip()


@orders_bp.post("/orders/<int:order_id>/pickup")
def confirm_pickup(order_id: int):
    actor = current_actor()
    if not actor:
        return jsonify({"message": "Unauthorized"}), 401
    return _render(order_ledger.confirm_pickup(actor, order_id, _token_from_body()))


@orders_bp.post("/orders/<int:order_id>/delivery")
def confirm_delivery(order_id: int):
    actor = current_actor()
    if not actor:
        return jsonify({"message": "Unauthorized"}), 401
    return _render(order_ledger.confirm_delivery(actor, order_id, _token_from_body()))


@orders_bp.post("/orders/<int:order_id>/cancel")
def cancel_order(order_id: int):
    actor = current_actor()
    if not actor:
        return jsonify({"message": "Unauthorized"}), 401
    data = request.get_json(silent=True) or {}
    return _render(order_ledger.cancel(actor, order_id, str(data.get("reason") or "")))


@orders_bp.post("/orders/<int:order_id>/dispute")
def open_dispute(order_id: int):
    actor = current_actor()
    if not actor:
        return jsonify({"message": "Unauthorized"}), 401
    data = request.get_json(silent=True) or {}
    return _render(order_ledger.open_dispute(actor, order_id, str(data.get("reason") or "")))
