from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime

EARTH_RADIUS_KM = 6371.0
DEFAULT_STALENESS_SECONDS = 15 * 60

# Advisory ETA minutes per km, by service mode.
MINUTES_PER_KM = {
    "courier": 2.0,
    "taxi_moto": 2.0,
    "freight_forwarder": 1.0,
    "warehouse": 1.0,
}


@dataclass(frozen=True)
class Candidate:
    id: int
    role: str
    latitude: float
    longitude: float
    reported_at: datetime
    rating: float = 4.0
    online: bool = True
    avg_response_seconds: int | None = None


@dataclass(frozen=True)
class RankedProvider:
    id: int
    role: str
    latitude: float
    longitude: float
    distance_km: float
    staleness_seconds: int
    rating: float
    online: bool
    eta_minutes: int
    avg_response_seconds: int | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "role": self.role,
            "position": {"latitude": self.latitude, "longitude": self.longitude},
            "distance_km": round(self.distance_km, 2),
            "staleness_seconds": self.staleness_seconds,
            "rating": self.rating,
            "online": self.online,
            "eta_minutes": self.eta_minutes,
            "avg_response_seconds": self.avg_response_seconds,
        }


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(dlon / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(max(0.0, 1 - a)))
    return EARTH_RADIUS_KM * c


def eta_minutes(distance_km: float, role: str) -> int:
    per_km = MINUTES_PER_KM.get((role or "").strip().lower(), MINUTES_PER_KM["courier"])
    return int(math.ceil(max(0.0, distance_km) * per_km))


def valid_coordinates(lat, lng) -> bool:
    try:
        lat_f = float(lat)
        lng_f = float(lng)
    except (TypeError, ValueError):
        return False
    if math.isnan(lat_f) or math.isnan(lng_f):
        return False
    return -90.0 <= lat_f <= 90.0 and -180.0 <= lng_f <= 180.0


def rank(
    origin: tuple[float, float],
    candidates,
    *,
    max_distance_km: float,
    max_staleness_seconds: int = DEFAULT_STALENESS_SECONDS,
    now: datetime | None = None,
    online_only: bool = False,
) -> list[RankedProvider]:
    """Rank candidates around ``origin``.

    Stale reports and candidates beyond ``max_distance_km`` are dropped. The
    result is ordered by distance, then higher rating, then lower average
    response time (unknown response times sort last).
    """
    if not valid_coordinates(origin[0], origin[1]):
        raise ValueError("origin must be a valid latitude/longitude pair")
    moment = now or datetime.utcnow()
    olat, olng = float(origin[0]), float(origin[1])

    ranked: list[RankedProvider] = []
    for cand in candidates:
        if online_only and not cand.online:
            continue
        if not valid_coordinates(cand.latitude, cand.longitude):
            continue
        age = int(max(0.0, (moment - cand.reported_at).total_seconds()))
        if age > int(max_staleness_seconds):
            continue
        distance = haversine_km(olat, olng, float(cand.latitude), float(cand.longitude))
        if distance > float(max_distance_km):
            continue
        ranked.append(
            RankedProvider(
                id=int(cand.id),
                role=cand.role,
                latitude=float(cand.latitude),
                longitude=float(cand.longitude),
                distance_km=distance,
                staleness_seconds=age,
                rating=float(cand.rating if cand.rating is not None else 4.0),
                online=bool(cand.online),
                eta_minutes=eta_minutes(distance, cand.role),
                avg_response_seconds=cand.avg_response_seconds,
            )
        )

    def _sort_key(p: RankedProvider):
        response = p.avg_response_seconds
        return (p.distance_km, -p.rating, response is None, response if response is not None else 0)

    ranked.sort(key=_sort_key)
    return ranked
