import hashlib
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from globe.clock import parse_ts, utcnow
from globe.geo import cell_center, cell_id, haversine_meters, normalize_point, snap_to_grid

DEFAULT_WINDOW_SECONDS = 900
DEFAULT_HALF_LIFE_SECONDS = 300
DEFAULT_MAX_SKEW_SECONDS = 60

_NEIGHBOURS = [(dr, dc) for dr in (-1, 0, 1) for dc in (-1, 0, 1) if (dr, dc) != (0, 0)]


@dataclass
class PresencePoint:
    user_id: str
    lat: float
    lng: float
    seen_at: Optional[datetime]

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> Optional["PresencePoint"]:
        if not isinstance(row, dict):
            return None
        pt = normalize_point(row)
        user_id = row.get("user_id") or row.get("auth_user_id") or row.get("id")
        if pt is None or not user_id:
            return None
        seen_at = parse_ts(row.get("updated_at") or row.get("created_at") or row.get("last_loc_ts"))
        return cls(user_id=str(user_id), lat=pt.lat, lng=pt.lng, seen_at=seen_at)


@dataclass
class ZoneBlob:
    blob_id: str
    cells: List[str]
    user_count: int
    weight: float
    lat: float
    lng: float
    radius_m: float
    intensity: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        """Client payload. Member cells stay internal: one may hold a single user."""
        return {
            "blob_id": self.blob_id,
            "user_count": self.user_count,
            "weight": round(self.weight, 4),
            "lat": self.lat,
            "lng": self.lng,
            "radius_m": round(self.radius_m, 1),
            "intensity": round(self.intensity, 4),
        }


@dataclass
class _Cell:
    users: Set[str] = field(default_factory=set)
    weight: float = 0.0


def _latest_per_user(
    points: Iterable[PresencePoint], now: datetime, window_seconds: int, max_skew_seconds: int
) -> Dict[str, PresencePoint]:
    oldest = now - timedelta(seconds=window_seconds)
    newest = now + timedelta(seconds=max_skew_seconds)
    latest: Dict[str, PresencePoint] = {}
    for p in points:
        if p is None or not p.user_id or p.seen_at is None:
            continue
        seen = parse_ts(p.seen_at)
        if seen is None or seen < oldest or seen > newest:
            continue
        prev = latest.get(p.user_id)
        if prev is None or parse_ts(prev.seen_at) < seen:
            latest[p.user_id] = p
    return latest


def _components(cells: Dict[Tuple[int, int], _Cell]) -> List[List[Tuple[int, int]]]:
    seen: Set[Tuple[int, int]] = set()
    groups: List[List[Tuple[int, int]]] = []
    for start in sorted(cells):
        if start in seen:
            continue
        stack = [start]
        seen.add(start)
        group: List[Tuple[int, int]] = []
        while stack:
            r, c = stack.pop()
            group.append((r, c))
            for dr, dc in _NEIGHBOURS:
                nxt = (r + dr, c + dc)
                if nxt in cells and nxt not in seen:
                    seen.add(nxt)
                    stack.append(nxt)
        groups.append(sorted(group))
    return groups


def calculate_zone_blobs(
    points: Iterable[PresencePoint],
    cell_deg: float,
    k_min: int,
    now: Optional[datetime] = None,
    window_seconds: int = DEFAULT_WINDOW_SECONDS,
    half_life_seconds: int = DEFAULT_HALF_LIFE_SECONDS,
    max_skew_seconds: int = DEFAULT_MAX_SKEW_SECONDS,
) -> List[ZoneBlob]:
    """
    Snap live presence onto a grid, merge touching cells into blobs and
    keep only blobs holding at least k_min distinct users.

    Each user counts once (latest sighting inside the window). Cell weight
    decays with age using half_life_seconds. Blob positions are derived from
    cell centres, never from individual coordinates.
    """
    if k_min < 1:
        raise ValueError(f"k_min must be >= 1, got {k_min!r}")
    if half_life_seconds <= 0:
        raise ValueError("half_life_seconds must be positive")
    now = parse_ts(now) or utcnow()

    latest = _latest_per_user(points, now, window_seconds, max_skew_seconds)

    cells: Dict[Tuple[int, int], _Cell] = {}
    for p in latest.values():
        key = snap_to_grid(p.lat, p.lng, cell_deg)
        age = max(0.0, (now - parse_ts(p.seen_at)).total_seconds())
        bucket = cells.setdefault(key, _Cell())
        bucket.users.add(p.user_id)
        bucket.weight += 0.5 ** (age / half_life_seconds)

    blobs: List[ZoneBlob] = []
    for group in _components(cells):
        users: Set[str] = set()
        weight = 0.0
        for key in group:
            users |= cells[key].users
            weight += cells[key].weight
        if len(users) < k_min:
            continue

        centres = [(cell_center(r, c, cell_deg), cells[(r, c)].weight) for r, c in group]
        if weight > 0:
            lat = sum(pt.lat * w for pt, w in centres) / weight
            lng = sum(pt.lng * w for pt, w in centres) / weight
        else:
            lat = sum(pt.lat for pt, _ in centres) / len(centres)
            lng = sum(pt.lng for pt, _ in centres) / len(centres)

        # Half the cell diagonal measured at the blob latitude.
        half_diag_m = haversine_meters((lat, lng), (lat + cell_deg / 2, lng + cell_deg / 2))
        radius = max(haversine_meters((lat, lng), (pt.lat, pt.lng)) for pt, _ in centres) + half_diag_m

        ids = sorted(cell_id(r, c, cell_deg) for r, c in group)
        digest = hashlib.sha1("|".join(ids).encode("utf-8")).hexdigest()[:12]
        blobs.append(
            ZoneBlob(
                blob_id=digest,
                cells=ids,
                user_count=len(users),
                weight=weight,
                lat=round(lat, 6),
                lng=round(lng, 6),
                radius_m=radius,
            )
        )

    if blobs:
        top = max(b.weight for b in blobs)
        for b in blobs:
            b.intensity = (b.weight / top) if top > 0 and math.isfinite(top) else 0.0
    blobs.sort(key=lambda b: (-b.weight, b.blob_id))
    return blobs


__all__ = [
    "DEFAULT_WINDOW_SECONDS",
    "DEFAULT_HALF_LIFE_SECONDS",
    "PresencePoint",
    "ZoneBlob",
    "calculate_zone_blobs",
]
