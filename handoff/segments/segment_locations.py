from __future__ import annotations

from flask import Blueprint, jsonify, request

from handoff.config import default_match_radius_km, location_staleness_seconds
from handoff.models import COURIER_ROLES, Role
from handoff.services import location_feed, proximity_matcher
from handoff.services.unit_of_work import run_outcome
from handoff.utils.actors import current_actor
from handoff.utils.observability import get_request_id

locations_bp = Blueprint("locations_bp", __name__, url_prefix="/api")

# Warehouses are served by freight forwarders in the role model.
_ROLE_ALIASES = {"warehouse": Role.FREIGHT_FORWARDER.value}


def _bad_request(message: str):
    return jsonify({"ok": False, "error": "VALIDATION_ERROR", "message": message, "status": 400, "trace_id": get_request_id()}), 400


@locations_bp.post("/locations")
def report_location():
    actor = current_actor()
    if not actor:
        return jsonify({"message": "Unauthorized"}), 401
    data = request.get_json(silent=True) or {}
    outcome = run_outcome(lambda: location_feed.report_location(int(actor.user_id), data), name="report_location", status=202)
    body = outcome.to_dict()
    if not outcome.ok:
        body["trace_id"] = get_request_id()
    return jsonify(body), int(outcome.status)


@locations_bp.get("/providers/nearby")
def nearby_providers():
    actor = current_actor()
    if not actor:
        return jsonify({"message": "Unauthorized"}), 401
    try:
        lat = float(request.args.get("lat", ""))
        lng = float(request.args.get("lng", ""))
    except ValueError:
        return _bad_request("lat and lng are required numbers")
    if not proximity_matcher.valid_coordinates(lat, lng):
        return _bad_request("lat/lng out of range")
    try:
        max_km = float(request.args.get("max_km") or default_match_radius_km())
    except ValueError:
        return _bad_request("max_km must be a number")
    if max_km <= 0:
        return _bad_request("max_km must be positive")

    roles = set(COURIER_ROLES)
    raw_role = (request.args.get("role") or "").strip().lower()
    if raw_role:
        parsed = Role.parse(_ROLE_ALIASES.get(raw_role, raw_role))
        if parsed not in COURIER_ROLES:
            return _bad_request("role must be courier, taxi_moto, freight_forwarder or warehouse")
        roles = {parsed}
    online_only = (request.args.get("online") or "1").strip().lower() in ("1", "true", "yes")

    staleness = location_staleness_seconds()
    ranked = proximity_matcher.rank(
        (lat, lng),
        location_feed.candidates(roles, max_staleness_seconds=staleness),
        max_distance_km=max_km,
        max_staleness_seconds=staleness,
        online_only=online_only,
    )
    return jsonify({"ok": True, "origin": {"latitude": lat, "longitude": lng}, "max_km": max_km, "items": [p.to_dict() for p in ranked]}), 200
