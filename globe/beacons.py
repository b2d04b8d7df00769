"""
Beacon layer for the globe.

Rows from presence, events, market and safety tables are normalised into
Beacon objects with a stable id, a point and an intensity in [0, 1]. The
globe only draws beacons; it never decides what they mean.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from globe.clock import iso, parse_ts, utcnow
from globe.geo import bucket_lat_lng, bucket_point, haversine_meters, normalize_point

logger = logging.getLogger(__name__)

EVENT_FULL_RSVP = 50
RADIO_FULL_BPM = 140


class BeaconType(str, Enum):
    SOCIAL = "SOCIAL"
    EVENT = "EVENT"
    RADIO = "RADIO"
    MARKET = "MARKET"
    SAFETY = "SAFETY"


@dataclass
class BeaconSources:
    presence_table: str = "presence"
    events_table: str = "events"
    market_table: str = "marketplace"
    safety_table: str = "panic_events"

    def table_types(self) -> Dict[str, BeaconType]:
        return {
            self.presence_table: BeaconType.SOCIAL,
            self.events_table: BeaconType.EVENT,
            self.market_table: BeaconType.MARKET,
            self.safety_table: BeaconType.SAFETY,
        }


@dataclass
class Beacon:
    id: str
    type: BeaconType
    lat: float
    lng: float
    intensity: float
    expires_at: Optional[datetime] = None
    meta: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "lat": self.lat,
            "lng": self.lng,
            "intensity": self.intensity,
            "expires_at": iso(self.expires_at) if self.expires_at else None,
            "meta": self.meta,
        }


def _clamp01(n: float) -> float:
    return max(0.0, min(1.0, n))


def _num(val: Any) -> float:
    try:
        return float(val or 0)
    except (TypeError, ValueError):
        return 0.0


def intensity_from_row(beacon_type: BeaconType, row: Dict[str, Any]) -> float:
    if beacon_type == BeaconType.SAFETY:
        return 1.0
    if beacon_type == BeaconType.SOCIAL:
        return 0.7
    if beacon_type == BeaconType.MARKET:
        return 0.6
    if beacon_type == BeaconType.EVENT:
        rsvp = row.get("rsvp_count")
        if rsvp is None:
            rsvp = row.get("going_count")
        if rsvp is None:
            rsvp = row.get("attending_count")
        return _clamp01(_num(rsvp) / EVENT_FULL_RSVP)
    if beacon_type == BeaconType.RADIO:
        return _clamp01(_num(row.get("bpm")) / RADIO_FULL_BPM)
    return 0.5


def beacon_id(beacon_type: BeaconType, row: Dict[str, Any]) -> str:
    """Stable id, unique across source tables."""
    if beacon_type == BeaconType.SOCIAL:
        return f"presence:{row.get('user_id') or row.get('id')}"
    if beacon_type == BeaconType.EVENT:
        return f"event:{row.get('id')}"
    if beacon_type == BeaconType.MARKET:
        return f"market:{row.get('id')}"
    if beacon_type == BeaconType.SAFETY:
        return f"safety:{row.get('user_id') or row.get('id')}"
    if beacon_type == BeaconType.RADIO:
        return "radio:live"
    raise ValueError(f"Unhandled beacon type: {beacon_type!r}")


def build_beacon(beacon_type: BeaconType, row: Dict[str, Any]) -> Optional[Beacon]:
    pt = normalize_point(row)
    if pt is None:
        return None
    expires = (
        row.get("expires_at") or row.get("ends_at") or row.get("active_until") or row.get("resolved_at")
    )
    meta = row.get("metadata")
    if meta is None:
        meta = row.get("meta")
    return Beacon(
        id=beacon_id(beacon_type, row),
        type=beacon_type,
        lat=pt.lat,
        lng=pt.lng,
        intensity=intensity_from_row(beacon_type, row),
        expires_at=parse_ts(expires),
        meta=meta if isinstance(meta, dict) else None,
    )


def prune_expired(beacons: Dict[str, Beacon], now: Optional[datetime] = None) -> int:
    now = parse_ts(now) or utcnow()
    stale = [bid for bid, b in beacons.items() if b.expires_at is not None and b.expires_at < now]
    for bid in stale:
        beacons.pop(bid, None)
    return len(stale)


class BeaconRegistry:
    """
    Process-wide beacon map. Fed by an initial table load and then by
    Supabase database-webhook payloads.
    """

    def __init__(self, sources: Optional[BeaconSources] = None):
        self.sources = sources or BeaconSources()
        self._beacons: Dict[str, Beacon] = {}
        self._lock = threading.Lock()
        self.loaded_at: Optional[datetime] = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._beacons)

    def upsert_row(self, beacon_type: BeaconType, row: Dict[str, Any]) -> Optional[Beacon]:
        beacon = build_beacon(beacon_type, row)
        if beacon is None:
            return None
        with self._lock:
            self._beacons[beacon.id] = beacon
        return beacon

    def delete_row(self, beacon_type: BeaconType, row: Dict[str, Any]) -> bool:
        bid = beacon_id(beacon_type, row)
        with self._lock:
            return self._beacons.pop(bid, None) is not None

    def apply_change(self, payload: Dict[str, Any]) -> Optional[str]:
        """
        Apply a database-webhook payload. Returns the affected beacon id,
        or None when the payload was ignored.
        """
        table = payload.get("table")
        beacon_type = self.sources.table_types().get(table)
        if beacon_type is None:
            logger.debug("[Beacons] ignoring change for table=%s", table)
            return None
        change = str(payload.get("type") or payload.get("eventType") or "").upper()
        if change in ("INSERT", "UPDATE"):
            record = payload.get("record") or payload.get("new") or {}
            beacon = self.upsert_row(beacon_type, record)
            if beacon is None:
                # A row that lost its location must disappear from the globe.
                self.delete_row(beacon_type, record)
                return None
            return beacon.id
        if change == "DELETE":
            old = payload.get("old_record") or payload.get("old") or {}
            self.delete_row(beacon_type, old)
            return beacon_id(beacon_type, old)
        logger.warning("[Beacons] unknown change type=%r table=%s", change, table)
        return None

    def replace_all(self, beacons: Iterable[Beacon], now: Optional[datetime] = None) -> None:
        with self._lock:
            self._beacons = {b.id: b for b in beacons}
            self.loaded_at = parse_ts(now) or utcnow()

    def snapshot(self, now: Optional[datetime] = None) -> List[Beacon]:
        with self._lock:
            prune_expired(self._beacons, now)
            return sorted(self._beacons.values(), key=lambda b: b.id)


def public_beacons(beacons: Iterable[Beacon], decimals: int = 2) -> List[Beacon]:
    """
    Client-safe view of the registry.

    Presence beacons are dropped; crowds reach clients only through the
    k-anonymous zones and tiles. Safety beacons lose their owner and meta and
    are snapped to a coarse bucket, one beacon per bucket.
    """
    out: List[Beacon] = []
    safety: Dict[str, Beacon] = {}
    for b in beacons:
        if b.type == BeaconType.SOCIAL:
            continue
        if b.type != BeaconType.SAFETY:
            out.append(b)
            continue
        key = bucket_lat_lng(b.lat, b.lng, decimals)
        seen = safety.get(key)
        if seen is not None and seen.intensity >= b.intensity:
            continue
        pt = bucket_point(b.lat, b.lng, decimals)
        safety[key] = Beacon(
            id=f"safety:{key}",
            type=BeaconType.SAFETY,
            lat=pt.lat,
            lng=pt.lng,
            intensity=b.intensity,
            expires_at=b.expires_at,
        )
    out.extend(safety.values())
    return sorted(out, key=lambda b: b.id)


def nearby_beacons(
    beacons: Iterable[Beacon],
    origin: Tuple[float, float],
    radius_m: float,
    types: Optional[Sequence[BeaconType]] = None,
    limit: int = 50,
) -> List[Tuple[Beacon, float]]:
    wanted = set(types) if types else None
    hits: List[Tuple[Beacon, float]] = []
    for b in beacons:
        if wanted is not None and b.type not in wanted:
            continue
        dist = haversine_meters(origin, (b.lat, b.lng))
        if dist <= radius_m:
            hits.append((b, dist))
    hits.sort(key=lambda pair: (pair[1], pair[0].id))
    return hits[: max(0, limit)]


async def load_active_beacons(
    gateway,
    registry: BeaconRegistry,
    now: Optional[datetime] = None,
) -> int:
    """
    Initial load of every beacon source. A failing source is logged and
    skipped so one broken table does not blank the globe.
    """
    now = parse_ts(now) or utcnow()
    now_iso = iso(now)
    src = registry.sources
    queries = [
        (BeaconType.SOCIAL, src.presence_table, [("gt", "expires_at", now_iso)], None),
        (BeaconType.EVENT, src.events_table, [("lte", "starts_at", now_iso), ("gte", "ends_at", now_iso)], None),
        (BeaconType.MARKET, src.market_table, [], f"active_until.is.null,active_until.gt.{now_iso}"),
        (BeaconType.SAFETY, src.safety_table, [("is_", "resolved_at", "null")], None),
    ]
    collected: List[Beacon] = []
    for beacon_type, table, filters, or_filter in queries:
        try:
            rows = await gateway.select(table, filters=filters, or_filter=or_filter)
        except Exception as e:
            logger.warning("[Beacons] %s load failed: %s", table, e)
            continue
        for row in rows or []:
            beacon = build_beacon(beacon_type, row)
            if beacon is not None:
                collected.append(beacon)
    registry.replace_all(collected, now=now)
    logger.info("[Beacons] loaded %s beacons", len(collected))
    return len(collected)


__all__ = [
    "BeaconType",
    "BeaconSources",
    "Beacon",
    "BeaconRegistry",
    "intensity_from_row",
    "beacon_id",
    "build_beacon",
    "prune_expired",
    "public_beacons",
    "nearby_beacons",
    "load_active_beacons",
]
