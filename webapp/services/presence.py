import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from globe.clock import iso, utcnow
from globe.geo import make_point, normalize_point
from globe.nearby import clamp_int
from webapp.services.gateway import DataGateway

logger = logging.getLogger(__name__)

PRESENCE_TABLE = "presence"
PRESENCE_MODES = ("SOCIAL", "EVENT", "TRAVEL")
DEFAULT_LIVE_MINUTES = 60
DEFAULT_EXTEND_MINUTES = 30


class PresenceError(Exception):
    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def _wkt(lat: Optional[float], lng: Optional[float]) -> Optional[str]:
    pt = make_point(lat, lng)
    if pt is None:
        return None
    return f"POINT({pt.lng} {pt.lat})"


def _parse_row(row: Dict[str, Any]) -> Dict[str, Any]:
    pt = normalize_point(row)
    return {**row, "geo": {"lat": pt.lat, "lng": pt.lng} if pt else None}


def normalize_presence_mode(mode: Any) -> str:
    val = str(mode or "").strip().upper()
    if val not in PRESENCE_MODES:
        raise PresenceError(f"Invalid presence mode: {mode!r}")
    return val


async def go_live(
    gw: DataGateway,
    user_id: str,
    mode: str,
    lat: Optional[float] = None,
    lng: Optional[float] = None,
    minutes: Any = DEFAULT_LIVE_MINUTES,
) -> Dict[str, Any]:
    """
    Upsert the caller's presence row through rpc_go_live, which enforces
    capabilities server-side (onboarding, bans).
    """
    mode = normalize_presence_mode(mode)
    minutes = clamp_int(minutes, 5, 480, DEFAULT_LIVE_MINUTES)
    try:
        await gw.rpc("rpc_go_live", {"p_user_id": user_id, "p_mode": mode, "p_geo": _wkt(lat, lng), "p_minutes": minutes})
    except RuntimeError:
        raise
    except Exception as e:
        message = str(getattr(e, "message", None) or e)
        if "ONBOARDING_REQUIRED" in message:
            raise PresenceError("Complete onboarding to go live", status_code=403)
        raise PresenceError(message)
    logger.info("[Presence] live user=%s mode=%s minutes=%s", user_id, mode, minutes)
    return {"success": True, "mode": mode, "minutes": minutes}


async def stop_live(gw: DataGateway, user_id: str) -> Dict[str, Any]:
    await gw.delete(PRESENCE_TABLE, [("eq", "user_id", user_id)])
    return {"success": True}


async def extend_live(gw: DataGateway, user_id: str, minutes: Any = DEFAULT_EXTEND_MINUTES) -> Dict[str, Any]:
    minutes = clamp_int(minutes, 5, 480, DEFAULT_EXTEND_MINUTES)
    new_expiry = iso(utcnow() + timedelta(minutes=minutes))
    await gw.update(PRESENCE_TABLE, {"expires_at": new_expiry}, [("eq", "user_id", user_id)])
    return {"success": True, "expires_at": new_expiry}


async def update_live_location(gw: DataGateway, user_id: str, lat: Any, lng: Any) -> Dict[str, Any]:
    geo = _wkt(lat, lng)
    if geo is None:
        raise PresenceError("Invalid lat/lng")
    await gw.update(PRESENCE_TABLE, {"geo": geo}, [("eq", "user_id", user_id)])
    return {"success": True}


async def active_count(gw: DataGateway, mode: Optional[str] = None) -> int:
    if mode:
        mode = normalize_presence_mode(mode)
    rows = await gw.active_presence(mode=mode)
    return len({r.get("user_id") for r in rows if r.get("user_id")})


async def current(gw: DataGateway, user_id: str) -> Optional[Dict[str, Any]]:
    rows = await gw.select(
        PRESENCE_TABLE,
        filters=[("eq", "user_id", user_id), ("gt", "expires_at", iso(utcnow()))],
        limit=1,
    )
    if not rows:
        return None
    return _parse_row(rows[0])


__all__ = [
    "PRESENCE_MODES",
    "PresenceError",
    "normalize_presence_mode",
    "go_live",
    "stop_live",
    "extend_live",
    "update_live_location",
    "active_count",
    "current",
]
