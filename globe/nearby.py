import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from globe.clock import parse_ts, utcnow
from globe.geo import bucket_point, haversine_many, normalize_point

TRAVEL_MODES = ("WALK", "TRANSIT", "DRIVE", "BICYCLE")
DEFAULT_MAX_AGE_SECONDS = 900

PUBLIC_PROFILE_FIELDS = (
    "email",
    "full_name",
    "avatar_url",
    "bio",
    "preferred_vibes",
    "xp",
    "availability_status",
    "updated_date",
    "updated_at",
    "city",
)


def clamp_int(value: Any, lo: int, hi: int, default: Optional[int]) -> Optional[int]:
    if value is None or value == "":
        return default
    try:
        num = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(num):
        return default
    return int(max(lo, min(hi, round(num))))


def normalize_mode(mode: Any) -> str:
    val = str(mode or "").strip().upper()
    if val in ("WALKING",):
        val = "WALK"
    if val in ("DRIVING", "CAR"):
        val = "DRIVE"
    if val in ("BICYCLING", "BIKE", "CYCLE"):
        val = "BICYCLE"
    return val if val in TRAVEL_MODES else "WALK"


@dataclass
class NearbyParams:
    radius_m: int = 10000
    limit: int = 40
    accuracy_m: Optional[int] = None
    eta_top_n: int = 25
    eta_ttl_seconds: int = 300

    @classmethod
    def from_query(
        cls,
        radius_m: Any = None,
        limit: Any = None,
        accuracy_m: Any = None,
        eta_top_n: Any = None,
        eta_ttl_seconds: Any = None,
    ) -> "NearbyParams":
        return cls(
            radius_m=clamp_int(radius_m, 500, 50000, 10000),
            limit=clamp_int(limit, 1, 100, 40),
            accuracy_m=clamp_int(accuracy_m, 0, 5000, None),
            eta_top_n=clamp_int(eta_top_n, 5, 60, 25),
            eta_ttl_seconds=clamp_int(eta_ttl_seconds, 120, 600, 300),
        )


def to_public_profile(row: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not isinstance(row, dict):
        return None
    return {key: row.get(key) for key in PUBLIC_PROFILE_FIELDS}


def rank_candidates_locally(
    viewer: Tuple[float, float],
    rows: Iterable[Dict[str, Any]],
    radius_m: float,
    limit: int,
    exclude_user_id: Optional[str] = None,
    max_age_seconds: int = DEFAULT_MAX_AGE_SECONDS,
    now: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    """
    Distance search over raw presence-location rows, used when the PostGIS
    functions are not deployed. Output mirrors the RPC rows: coordinates are
    bucketed to two decimals and distances rounded to whole metres.
    """
    now = parse_ts(now) or utcnow()
    cutoff = now - timedelta(seconds=max_age_seconds)
    best: Dict[str, Tuple[float, float, datetime]] = {}
    for row in rows or []:
        if not isinstance(row, dict):
            continue
        user_id = row.get("auth_user_id") or row.get("user_id")
        if not user_id or str(user_id) == str(exclude_user_id):
            continue
        seen = parse_ts(row.get("updated_at") or row.get("last_loc_ts"))
        if seen is None or seen < cutoff:
            continue
        pt = normalize_point(row)
        if pt is None:
            continue
        prev = best.get(str(user_id))
        if prev is None or prev[2] < seen:
            best[str(user_id)] = (pt.lat, pt.lng, seen)

    if not best:
        return []

    user_ids = list(best.keys())
    lats = [best[u][0] for u in user_ids]
    lngs = [best[u][1] for u in user_ids]
    distances = haversine_many(viewer, lats, lngs)

    out: List[Dict[str, Any]] = []
    for user_id, lat, lng, dist in zip(user_ids, lats, lngs, distances):
        if dist > radius_m:
            continue
        bucket = bucket_point(lat, lng, 2)
        out.append(
            {
                "user_id": user_id,
                "last_lat": bucket.lat,
                "last_lng": bucket.lng,
                "distance_meters": int(round(float(dist))),
            }
        )
    out.sort(key=lambda c: (c["distance_meters"], c["user_id"]))
    return out[: max(0, limit)]


def sort_by_eta(candidates: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    def _key(c: Dict[str, Any]):
        eta = c.get("eta_seconds")
        eta_val = float(eta) if isinstance(eta, (int, float)) and math.isfinite(eta) else math.inf
        dist = c.get("distance_meters")
        dist_val = float(dist) if isinstance(dist, (int, float)) else math.inf
        return (eta_val, dist_val)

    return sorted(candidates, key=_key)


__all__ = [
    "TRAVEL_MODES",
    "NearbyParams",
    "clamp_int",
    "normalize_mode",
    "to_public_profile",
    "rank_candidates_locally",
    "sort_by_eta",
]
