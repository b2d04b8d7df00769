import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple

import requests

from globe.clock import iso, utcnow
from globe.geo import haversine_meters

logger = logging.getLogger(__name__)

DISTANCE_MATRIX_URL = "https://maps.googleapis.com/maps/api/distancematrix/json"
# Google can be slow on batch requests.
DEFAULT_TIMEOUT_SECONDS = 20

# km/h used when no provider answer is available
APPROX_SPEEDS_KMH = {
    "DRIVE": 22.0,
    "BICYCLE": 16.0,
    "WALK": 4.8,
    "TRANSIT": 18.0,
}


@dataclass
class DistanceMatrixResult:
    ok: bool
    results: List[Dict[str, Any]] = field(default_factory=list)
    provider: str = "DIST_MATRIX"
    error: Optional[str] = None
    details: Any = None


def distance_matrix_mode(mode: str) -> Optional[str]:
    return {
        "WALK": "walking",
        "TRANSIT": "transit",
        "DRIVE": "driving",
        "BICYCLE": "bicycling",
    }.get(mode)


def _seconds(value: Any) -> Optional[int]:
    # Distance Matrix gives integer seconds; Routes v2 gives "123s" strings.
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return int(round(value)) if value > 0 else None
    if isinstance(value, str) and value.endswith("s"):
        try:
            secs = float(value[:-1])
        except ValueError:
            return None
        return int(round(secs)) if secs > 0 else None
    return None


def _parse_elements(elements: Sequence[Any]) -> List[Dict[str, Any]]:
    results = []
    for el in elements:
        if not isinstance(el, dict) or el.get("status") != "OK":
            results.append({"ok": False, "duration_seconds": None, "distance_meters": None})
            continue
        duration = _seconds((el.get("duration") or {}).get("value"))
        distance = (el.get("distance") or {}).get("value")
        distance_m = int(round(distance)) if isinstance(distance, (int, float)) and not isinstance(distance, bool) else None
        if not duration or not distance_m:
            results.append({"ok": False, "duration_seconds": None, "distance_meters": None})
            continue
        results.append({"ok": True, "duration_seconds": duration, "distance_meters": distance_m})
    return results


def fetch_distance_matrix(
    api_key: str,
    origin: Tuple[float, float],
    destinations: Sequence[Tuple[float, float]],
    mode: str,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    session: Optional[requests.Session] = None,
) -> DistanceMatrixResult:
    dm_mode = distance_matrix_mode(mode)
    if not dm_mode:
        return DistanceMatrixResult(ok=False, error=f"Unsupported mode: {mode}")
    if not destinations:
        return DistanceMatrixResult(ok=True, results=[])

    params = {
        "origins": f"{origin[0]},{origin[1]}",
        "destinations": "|".join(f"{d[0]},{d[1]}" for d in destinations),
        "mode": dm_mode,
        "key": api_key,
    }
    http = session or requests
    try:
        resp = http.get(DISTANCE_MATRIX_URL, params=params, timeout=timeout)
    except requests.Timeout as e:
        logger.warning("[Routing] Distance Matrix timed out: %s", e)
        return DistanceMatrixResult(ok=False, error="Distance Matrix timed out", details=str(e))
    except requests.RequestException as e:
        logger.warning("[Routing] Distance Matrix request failed: %s", e)
        return DistanceMatrixResult(ok=False, error="Distance Matrix request failed", details=str(e))

    try:
        body = resp.json()
    except ValueError:
        body = None

    if resp.status_code != 200:
        return DistanceMatrixResult(ok=False, error=f"Distance Matrix HTTP {resp.status_code}", details=body)
    if not isinstance(body, dict) or body.get("status") != "OK":
        status = body.get("status") if isinstance(body, dict) else None
        return DistanceMatrixResult(ok=False, error=f"Distance Matrix status {status or 'unknown'}", details=body)

    rows = body.get("rows") or []
    elements = rows[0].get("elements") if rows and isinstance(rows[0], dict) else None
    if not isinstance(elements, list):
        return DistanceMatrixResult(ok=False, error="Distance Matrix response missing elements", details=body)

    return DistanceMatrixResult(ok=True, results=_parse_elements(elements))


def cache_row(
    cache_key: str,
    origin_bucket: str,
    dest_bucket: str,
    mode: str,
    duration_seconds: int,
    distance_meters: Optional[int],
    ttl_seconds: int,
    provider: str = "DIST_MATRIX",
) -> Dict[str, Any]:
    now = utcnow()
    return {
        "cache_key": cache_key,
        "origin_bucket": origin_bucket,
        "dest_bucket": dest_bucket,
        "mode": mode,
        "duration_seconds": duration_seconds,
        "distance_meters": distance_meters,
        "computed_at": iso(now),
        "expires_at": iso(now + timedelta(seconds=ttl_seconds)),
        "provider": provider,
    }


def approximate_duration_seconds(
    origin: Tuple[float, float], destination: Tuple[float, float], mode: str
) -> Tuple[int, Optional[int]]:
    """(distance_meters, seconds) from straight-line distance and a mode speed."""
    distance_m = int(round(haversine_meters(origin, destination)))
    speed = APPROX_SPEEDS_KMH.get(mode)
    if not speed:
        return distance_m, None
    seconds = int(round((distance_m / 1000.0) / speed * 3600))
    return distance_m, max(60, seconds)


__all__ = [
    "DistanceMatrixResult",
    "distance_matrix_mode",
    "fetch_distance_matrix",
    "approximate_duration_seconds",
    "cache_row",
]
