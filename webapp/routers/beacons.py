import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Response

from globe.beacons import BeaconRegistry, BeaconType, load_active_beacons, nearby_beacons, public_beacons
from globe.clock import iso
from globe.geo import make_point
from webapp.schemas.beacons import BeaconChangeResult, BeaconsResponse
from webapp.services.auth import get_current_user, get_gateway, require_cron_secret
from webapp.services.gateway import DataGateway

logger = logging.getLogger(__name__)

router = APIRouter()

# Process-wide registry, loaded on first read and kept fresh by webhooks.
REGISTRY = BeaconRegistry()


def get_registry() -> BeaconRegistry:
    return REGISTRY


def _parse_types(raw: Optional[str]):
    if not raw:
        return None
    out = []
    for part in raw.split(","):
        val = part.strip().upper()
        if not val:
            continue
        try:
            out.append(BeaconType(val))
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Unknown beacon type: {part.strip()}")
    return out or None


@router.get("", response_model=BeaconsResponse, dependencies=[Depends(get_current_user)])
async def list_beacons(
    lat: Optional[float] = None,
    lng: Optional[float] = None,
    radius_m: int = Query(5000, ge=100, le=50000),
    types: Optional[str] = None,
    limit: int = Query(200, ge=1, le=1000),
    response: Response = None,
    registry: BeaconRegistry = Depends(get_registry),
    gw: DataGateway = Depends(get_gateway),
):
    wanted = _parse_types(types)
    if registry.loaded_at is None:
        await load_active_beacons(gw, registry)

    beacons = public_beacons(registry.snapshot())
    if lat is not None or lng is not None:
        origin = make_point(lat, lng)
        if origin is None:
            raise HTTPException(status_code=400, detail="Invalid lat/lng")
        hits = nearby_beacons(beacons, origin, radius_m, types=wanted, limit=limit)
        items = [{**b.to_dict(), "distance_meters": int(round(d))} for b, d in hits]
    else:
        items = [b.to_dict() for b in beacons if wanted is None or b.type in wanted][:limit]

    if response is not None:
        response.headers["Cache-Control"] = "private, max-age=2"
    return {
        "beacons": items,
        "count": len(items),
        "loaded_at": iso(registry.loaded_at) if registry.loaded_at else None,
    }


@router.post(
    "/changes",
    response_model=BeaconChangeResult,
    dependencies=[Depends(require_cron_secret)],
)
async def apply_beacon_change(
    payload: Dict[str, Any] = Body(...),
    registry: BeaconRegistry = Depends(get_registry),
):
    table = payload.get("table")
    beacon_type = registry.sources.table_types().get(table)
    affected = registry.apply_change(payload)
    logger.info("[Beacons] change table=%s type=%s id=%s", table, payload.get("type"), affected)
    return {
        "applied": affected is not None,
        "beacon_id": affected,
        "table": table,
        "type": beacon_type.value if beacon_type else None,
    }
