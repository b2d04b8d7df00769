import logging
import math
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from globe.clock import iso, parse_ts, utcnow

logger = logging.getLogger(__name__)

# --- Constants ---
DEFAULT_K_MIN = 5
DEFAULT_TILE_MAX_AGE_SECONDS = 3600
APPROACH_BAND = 0.5


class ZoomState(str, Enum):
    WORLD = "world"
    CITY_APPROACHING = "city_approaching"
    CITY = "city"
    DISTRICT_APPROACHING = "district_approaching"
    DISTRICT = "district"
    STREET_APPROACHING = "street_approaching"
    STREET = "street"
    INTIMATE = "intimate"


ZOOM_THRESHOLDS = {
    "WORLD_TO_CITY": 3.0,
    "CITY_TO_DISTRICT": 8.0,
    "DISTRICT_TO_STREET": 12.0,
    "STREET_TO_INTIMATE": 16.0,
}

# threshold -> (approaching state, state being left)
_APPROACHES: List[Tuple[float, ZoomState, ZoomState]] = [
    (ZOOM_THRESHOLDS["WORLD_TO_CITY"], ZoomState.CITY_APPROACHING, ZoomState.WORLD),
    (ZOOM_THRESHOLDS["CITY_TO_DISTRICT"], ZoomState.DISTRICT_APPROACHING, ZoomState.CITY),
    (ZOOM_THRESHOLDS["DISTRICT_TO_STREET"], ZoomState.STREET_APPROACHING, ZoomState.DISTRICT),
]

# state -> (heat_level, cell_deg, k multiplier, zones, labels)
_STATE_POLICY: Dict[ZoomState, Tuple[str, Optional[float], int, Any, Any]] = {
    ZoomState.WORLD: ("country", 1.0, 1, False, False),
    ZoomState.CITY: ("city", 0.1, 1, "dots", "city_only"),
    ZoomState.DISTRICT: ("zone", 0.01, 2, "full", "zone_names"),
    ZoomState.STREET: ("street", 0.005, 3, "silhouettes", "on_intent"),
    ZoomState.INTIMATE: ("sparkle_only", None, 0, "silhouettes", "on_tap"),
}


@dataclass(frozen=True)
class ZoomContract:
    state: ZoomState
    heat_level: str
    cell_deg: Optional[float]
    k_min: Optional[int]
    show_heat: bool
    show_zones: bool
    labels: Any = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "heat_level": self.heat_level,
            "cell_deg": self.cell_deg,
            "k_min": self.k_min,
            "show_heat": self.show_heat,
            "show_zones": self.show_zones,
            "labels": self.labels,
        }


def _clean_zoom(zoom: Any) -> float:
    try:
        val = float(zoom)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(val) or val < 0:
        return 0.0
    return val


def _main_state(zoom: float) -> ZoomState:
    if zoom < ZOOM_THRESHOLDS["WORLD_TO_CITY"]:
        return ZoomState.WORLD
    if zoom < ZOOM_THRESHOLDS["CITY_TO_DISTRICT"]:
        return ZoomState.CITY
    if zoom < ZOOM_THRESHOLDS["DISTRICT_TO_STREET"]:
        return ZoomState.DISTRICT
    if zoom < ZOOM_THRESHOLDS["STREET_TO_INTIMATE"]:
        return ZoomState.STREET
    return ZoomState.INTIMATE


def zoom_state(zoom: Any, prev_zoom: Any = None) -> ZoomState:
    """
    Deterministic zoom -> state mapping. Approaching states only exist while
    zooming in and within APPROACH_BAND below a threshold.
    """
    z = _clean_zoom(zoom)
    if prev_zoom is not None and z > _clean_zoom(prev_zoom):
        for threshold, approaching, _ in _APPROACHES:
            if threshold - APPROACH_BAND <= z < threshold:
                return approaching
    return _main_state(z)


def _leaving_state(state: ZoomState) -> ZoomState:
    for _, approaching, leaving in _APPROACHES:
        if approaching == state:
            return leaving
    return state


def zoom_contract(zoom: Any, prev_zoom: Any = None, k_min: int = DEFAULT_K_MIN) -> ZoomContract:
    """
    What the globe is allowed to draw at a zoom level: heat granularity,
    grid size and the anonymity threshold tiles must meet.

    Approaching states blend between levels, so they reuse the coarser
    state's grid and k; the contract never gets finer before the
    transition completes. The intimate level draws no heat at all.
    """
    if k_min < 1:
        raise ValueError(f"k_min must be >= 1, got {k_min!r}")
    state = zoom_state(zoom, prev_zoom)
    policy_state = _leaving_state(state)
    heat_level, cell_deg, k_mult, zones, labels = _STATE_POLICY[policy_state]
    if state != policy_state:
        heat_level = "blending"
        zones = False
    if cell_deg is None:
        return ZoomContract(
            state=state,
            heat_level=heat_level,
            cell_deg=None,
            k_min=None,
            show_heat=False,
            show_zones=False,
            labels=labels,
        )
    return ZoomContract(
        state=state,
        heat_level=heat_level,
        cell_deg=cell_deg,
        k_min=int(k_min) * k_mult,
        show_heat=True,
        show_zones=zones in ("full", "silhouettes"),
        labels=labels,
    )


@dataclass
class HeatTile:
    city: Optional[str]
    cell_id: str
    lat: float
    lng: float
    cell_deg: Optional[float]
    user_count: Optional[int]
    window_start: Optional[datetime]
    window_end: Optional[datetime]
    category: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "HeatTile":
        def _num(val, cast):
            try:
                return cast(val) if val is not None else None
            except (TypeError, ValueError):
                return None

        return cls(
            city=(row.get("city") or None),
            cell_id=str(row.get("cell_id") or row.get("id") or ""),
            lat=_num(row.get("lat"), float) or 0.0,
            lng=_num(row.get("lng"), float) or 0.0,
            cell_deg=_num(row.get("cell_deg"), float),
            user_count=_num(row.get("user_count", row.get("count")), int),
            window_start=parse_ts(row.get("window_start")),
            window_end=parse_ts(row.get("window_end")),
            category=row.get("category"),
        )


def _safety_blocks(safety: Any, city: Optional[str], category: Optional[str]) -> bool:
    if safety is None:
        return False
    checker = getattr(safety, "is_disabled", None)
    if callable(checker):
        return bool(checker(city=city, category=category))
    return False


def render_decision(
    tile: HeatTile,
    contract: ZoomContract,
    now: Optional[datetime] = None,
    safety: Any = None,
    max_age_seconds: int = DEFAULT_TILE_MAX_AGE_SECONDS,
) -> Tuple[bool, str]:
    """
    k-anonymity gate for a single heat tile. First failing check wins.
    """
    if not contract.show_heat or contract.k_min is None or contract.cell_deg is None:
        return False, "zoom_suppressed"
    if _safety_blocks(safety, tile.city, tile.category):
        return False, "safety_switch"
    # An unknown grid size cannot be shown to be coarse enough.
    if tile.cell_deg is None or tile.cell_deg + 1e-12 < contract.cell_deg:
        return False, "too_fine"
    if tile.user_count is None or tile.user_count < contract.k_min:
        return False, "below_k"
    now = parse_ts(now) or utcnow()
    if tile.window_end is None or tile.window_end < now - timedelta(seconds=max_age_seconds):
        return False, "stale"
    return True, "ok"


def can_render(
    tile: HeatTile,
    contract: ZoomContract,
    now: Optional[datetime] = None,
    safety: Any = None,
    max_age_seconds: int = DEFAULT_TILE_MAX_AGE_SECONDS,
) -> bool:
    ok, _ = render_decision(tile, contract, now=now, safety=safety, max_age_seconds=max_age_seconds)
    return ok


def filter_renderable_tiles(
    tiles: Iterable[HeatTile],
    contract: ZoomContract,
    now: Optional[datetime] = None,
    safety: Any = None,
    max_age_seconds: int = DEFAULT_TILE_MAX_AGE_SECONDS,
) -> List[HeatTile]:
    now = parse_ts(now) or utcnow()
    kept: List[HeatTile] = []
    suppressed: Counter = Counter()
    for tile in tiles:
        ok, reason = render_decision(tile, contract, now=now, safety=safety, max_age_seconds=max_age_seconds)
        if ok:
            kept.append(tile)
        else:
            suppressed[reason] += 1
    if suppressed:
        logger.debug("[Globe] suppressed tiles state=%s %s", contract.state.value, dict(suppressed))
    return kept


def public_tile(tile: HeatTile, contract: ZoomContract) -> Dict[str, Any]:
    """Client payload for a renderable tile. Counts are banded to multiples of k."""
    k = contract.k_min or 1
    count = tile.user_count or 0
    return {
        "cell_id": tile.cell_id,
        "city": tile.city,
        "lat": tile.lat,
        "lng": tile.lng,
        "cell_deg": tile.cell_deg,
        "window_start": iso(tile.window_start) if tile.window_start else None,
        "window_end": iso(tile.window_end) if tile.window_end else None,
        "intensity": round(min(1.0, count / (10.0 * k)), 4),
        "count_band": (count // k) * k,
    }


__all__ = [
    "DEFAULT_K_MIN",
    "DEFAULT_TILE_MAX_AGE_SECONDS",
    "ZOOM_THRESHOLDS",
    "ZoomState",
    "ZoomContract",
    "HeatTile",
    "zoom_state",
    "zoom_contract",
    "render_decision",
    "can_render",
    "filter_renderable_tiles",
    "public_tile",
]
