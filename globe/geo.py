import math
import re
import struct
from typing import Any, Dict, NamedTuple, Optional, Sequence, Tuple

import numpy as np

EARTH_RADIUS_M = 6371000.0

_WKT_POINT = re.compile(r"POINT\s*\(\s*([-+\d.eE]+)\s+([-+\d.eE]+)\s*\)", re.IGNORECASE)
_HEX = re.compile(r"^[0-9a-fA-F]+$")

# EWKB flag bits set by PostGIS on the geometry type word
_EWKB_SRID = 0x20000000
_EWKB_TYPE_MASK = 0x0FFFFFFF


class Point(NamedTuple):
    lat: float
    lng: float


def _as_float(val: Any) -> Optional[float]:
    if val is None or isinstance(val, bool):
        return None
    try:
        out = float(val)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(out):
        return None
    return out


def make_point(lat: Any, lng: Any) -> Optional[Point]:
    """Validated Point or None when either coordinate is missing or out of range."""
    flat = _as_float(lat)
    flng = _as_float(lng)
    if flat is None or flng is None:
        return None
    if abs(flat) > 90 or abs(flng) > 180:
        return None
    return Point(flat, flng)


def _point_from_ewkb(raw: str) -> Optional[Point]:
    """Hex EWKB point, as PostgREST returns geography columns."""
    buf = bytes.fromhex(raw)
    if len(buf) < 21:
        return None
    order = "<" if buf[0] == 1 else ">"
    (geom_type,) = struct.unpack(order + "I", buf[1:5])
    if geom_type & _EWKB_TYPE_MASK != 1:
        return None
    offset = 9 if geom_type & _EWKB_SRID else 5
    if len(buf) < offset + 16:
        return None
    x, y = struct.unpack(order + "dd", buf[offset : offset + 16])
    return make_point(y, x)


def _point_from_geo(geo: Any) -> Optional[Point]:
    if geo is None:
        return None
    if isinstance(geo, dict):
        if geo.get("type") == "Point":
            coords = geo.get("coordinates")
            if isinstance(coords, (list, tuple)) and len(coords) >= 2:
                # GeoJSON order is [lng, lat]
                return make_point(coords[1], coords[0])
            return None
        if "lat" in geo or "lng" in geo:
            return make_point(geo.get("lat"), geo.get("lng"))
        return None
    if isinstance(geo, str):
        match = _WKT_POINT.search(geo)
        if match:
            return make_point(match.group(2), match.group(1))
        if len(geo) % 2 == 0 and _HEX.match(geo):
            return _point_from_ewkb(geo)
    return None


def normalize_point(row: Optional[Dict[str, Any]]) -> Optional[Point]:
    """
    Pull a coordinate out of a row in whatever shape the table stores it:
    flat lat/lng columns, latitude/longitude, last_lat/last_lng, or a
    geo/location/coordinates field holding GeoJSON, WKT or a {lat, lng} dict.
    """
    if not isinstance(row, dict):
        return None
    for lat_key, lng_key in (("lat", "lng"), ("latitude", "longitude"), ("last_lat", "last_lng")):
        if row.get(lat_key) is not None and row.get(lng_key) is not None:
            pt = make_point(row.get(lat_key), row.get(lng_key))
            if pt:
                return pt
    for key in ("geo", "location", "coordinates"):
        pt = _point_from_geo(row.get(key))
        if pt:
            return pt
    return None


def haversine_meters(a: Tuple[float, float], b: Tuple[float, float]) -> float:
    lat1, lng1 = math.radians(a[0]), math.radians(a[1])
    lat2, lng2 = math.radians(b[0]), math.radians(b[1])
    d_lat = lat2 - lat1
    d_lng = lng2 - lng1
    h = math.sin(d_lat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(d_lng / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.atan2(math.sqrt(h), math.sqrt(max(0.0, 1 - h)))


def haversine_many(origin: Tuple[float, float], lats: Sequence[float], lngs: Sequence[float]) -> np.ndarray:
    """Distances in metres from origin to each (lat, lng) pair."""
    lat_arr = np.radians(np.asarray(lats, dtype=float))
    lng_arr = np.radians(np.asarray(lngs, dtype=float))
    lat0 = math.radians(origin[0])
    lng0 = math.radians(origin[1])
    d_lat = lat_arr - lat0
    d_lng = lng_arr - lng0
    h = np.sin(d_lat / 2) ** 2 + math.cos(lat0) * np.cos(lat_arr) * np.sin(d_lng / 2) ** 2
    h = np.clip(h, 0.0, 1.0)
    return 2 * EARTH_RADIUS_M * np.arctan2(np.sqrt(h), np.sqrt(1 - h))


def bucket_point(lat: float, lng: float, decimals: int = 2) -> Point:
    return Point(round(float(lat), decimals), round(float(lng), decimals))


def bucket_lat_lng(lat: float, lng: float, decimals: int = 2) -> str:
    pt = bucket_point(lat, lng, decimals)
    return f"{pt.lat:.{decimals}f},{pt.lng:.{decimals}f}"


def snap_to_grid(lat: float, lng: float, cell_deg: float) -> Tuple[int, int]:
    if cell_deg <= 0:
        raise ValueError(f"cell_deg must be positive, got {cell_deg!r}")
    row = int(math.floor((float(lat) + 90.0) / cell_deg))
    col = int(math.floor((float(lng) + 180.0) / cell_deg))
    return row, col


def cell_center(row: int, col: int, cell_deg: float) -> Point:
    lat = -90.0 + (row + 0.5) * cell_deg
    lng = -180.0 + (col + 0.5) * cell_deg
    return Point(round(lat, 9), round(lng, 9))


def cell_id(row: int, col: int, cell_deg: float) -> str:
    return f"{cell_deg:g}:{row}:{col}"


def time_slice(now_ms: int, ttl_seconds: int) -> int:
    return int(now_ms // (ttl_seconds * 1000))


def cache_key_for(origin_bucket: str, dest_bucket: str, mode: str, slice_id: int) -> str:
    return f"eta:{origin_bucket}|{dest_bucket}|{mode}|{slice_id}"


__all__ = [
    "EARTH_RADIUS_M",
    "Point",
    "make_point",
    "normalize_point",
    "haversine_meters",
    "haversine_many",
    "bucket_point",
    "bucket_lat_lng",
    "snap_to_grid",
    "cell_center",
    "cell_id",
    "time_slice",
    "cache_key_for",
]
