from __future__ import annotations

from datetime import datetime, timedelta

from flask import current_app

from handoff.config import location_staleness_seconds
from handoff.errors import ValidationError
from handoff.extensions import db
from handoff.models import COURIER_ROLES, DeliveryTracking, LocationReport, Role, User
from handoff.services.proximity_matcher import Candidate, eta_minutes, haversine_km, valid_coordinates

ACTIVE_TRACKING = ("assigned", "picked_up", "in_transit")

# Client clocks may run slightly ahead; anything further in the future is clamped.
MAX_CLOCK_SKEW = timedelta(minutes=2)


def _optional_float(payload: dict, key: str):
    raw = payload.get(key)
    if raw is None or raw == "":
        return None
    try:
        return float(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be a number", field=key)


def _parse_timestamp(raw, now: datetime) -> datetime:
    if raw is None or raw == "":
        return now
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        seconds = float(raw) / 1000.0 if float(raw) > 1e11 else float(raw)
        try:
            moment = datetime.utcfromtimestamp(seconds)
        except (OverflowError, OSError, ValueError):
            raise ValidationError("timestamp is out of range", field="timestamp")
    else:
        text = str(raw).strip().replace("Z", "+00:00")
        try:
            moment = datetime.fromisoformat(text)
        except ValueError:
            raise ValidationError("timestamp must be ISO-8601 or epoch", field="timestamp")
        if moment.tzinfo is not None:
            try:
                moment = (moment - moment.utcoffset()).replace(tzinfo=None)
            except OverflowError:
                raise ValidationError("timestamp is out of range", field="timestamp")
    if moment > now + MAX_CLOCK_SKEW:
        return now
    return moment


def report_location(user_id: int, payload: dict, *, now: datetime | None = None) -> dict:
    """Store the caller's latest position. Older reports are ignored."""
    moment = now or datetime.utcnow()
    lat = payload.get("latitude", payload.get("lat"))
    lng = payload.get("longitude", payload.get("lng"))
    if not valid_coordinates(lat, lng):
        raise ValidationError("latitude must be within [-90, 90] and longitude within [-180, 180]", field="latitude")
    lat_f, lng_f = float(lat), float(lng)
    reported_at = _parse_timestamp(payload.get("timestamp"), moment)

    row = LocationReport.query.filter_by(user_id=int(user_id)).first()
    if row is not None and row.reported_at is not None and reported_at < row.reported_at:
        return {"accepted": False, "reason": "stale", "reported_at": row.reported_at.isoformat()}
    if row is None:
        row = LocationReport(user_id=int(user_id))
        db.session.add(row)
    row.latitude = lat_f
    row.longitude = lng_f
    row.accuracy_m = _optional_float(payload, "accuracy")
    row.speed_mps = _optional_float(payload, "speed")
    row.heading_deg = _optional_float(payload, "heading")
    row.reported_at = reported_at
    row.received_at = moment

    updated = 0
    trackings = DeliveryTracking.query.filter(
        DeliveryTracking.courier_id == int(user_id),
        DeliveryTracking.status.in_(ACTIVE_TRACKING),
    ).all()
    for tracking in trackings:
        tracking.last_lat = lat_f
        tracking.last_lng = lng_f
        tracking.last_location_at = reported_at
        if tracking.status == "picked_up":
            tracking.status = "in_transit"
        if tracking.dropoff_lat is not None and tracking.dropoff_lng is not None and tracking.status == "in_transit":
            distance = haversine_km(lat_f, lng_f, float(tracking.dropoff_lat), float(tracking.dropoff_lng))
            user = db.session.get(User, int(user_id))
            role = user.role_enum.value if user is not None else Role.COURIER.value
            tracking.estimated_arrival_at = reported_at + timedelta(minutes=eta_minutes(distance, role))
        row.order_id = int(tracking.order_id)
        updated += 1

    current_app.logger.debug("location_reported user_id=%s trackings=%s", user_id, updated)
    return {"accepted": True, "reported_at": reported_at.isoformat(), "trackings_updated": updated}


def candidates(roles=None, *, now: datetime | None = None, max_staleness_seconds: int | None = None) -> list[Candidate]:
    """Snapshot of recently-seen providers with one of ``roles``."""
    wanted = {Role.parse(r) for r in (roles or COURIER_ROLES)}
    wanted.discard(None)
    if not wanted:
        return []
    moment = now or datetime.utcnow()
    window = int(max_staleness_seconds if max_staleness_seconds is not None else location_staleness_seconds())
    cutoff = moment - timedelta(seconds=window)
    rows = (
        db.session.query(LocationReport, User)
        .join(User, User.id == LocationReport.user_id)
        .filter(User.role.in_([r.value for r in wanted]))
        .filter(LocationReport.reported_at >= cutoff)
        .all()
    )
    out = []
    for report, user in rows:
        out.append(
            Candidate(
                id=int(user.id),
                role=user.role_enum.value,
                latitude=float(report.latitude),
                longitude=float(report.longitude),
                reported_at=report.reported_at,
                rating=float(user.rating if user.rating is not None else 4.0),
                online=bool(user.is_online),
                avg_response_seconds=user.avg_response_seconds,
            )
        )
    return out
