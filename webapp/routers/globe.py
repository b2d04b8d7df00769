import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response

from globe.anonymity import HeatTile, ZOOM_THRESHOLDS, filter_renderable_tiles, public_tile, zoom_contract
from globe.cities import city_bounds, normalize_city, rows_in_city
from globe.heat_tiles import aggregate_heat_tiles
from globe.zones import PresencePoint, calculate_zone_blobs
from webapp import config
from webapp.schemas.globe import (
    HeatTileRebuild,
    HeatTileRebuildResult,
    TilesResponse,
    ZonesResponse,
    ZoomContractOut,
)
from webapp.services import safety_switch
from webapp.services.auth import get_gateway, require_cron_secret
from webapp.services.gateway import DataGateway

logger = logging.getLogger(__name__)

router = APIRouter()
cron_router = APIRouter()

# Heat tiles are built at city resolution; finer zoom levels never render them.
CITY_ZOOM = ZOOM_THRESHOLDS["WORLD_TO_CITY"]


def _mark(response: Optional[Response], degraded: bool) -> None:
    if response is None:
        return
    if degraded:
        response.headers["x-ops-degraded"] = "1"
    response.headers["Cache-Control"] = "max-age=2"


async def _safety_state(gw: DataGateway):
    """Kill switch state; unreadable state suppresses everything."""
    try:
        return await safety_switch.load_state(gw), False
    except Exception as e:
        logger.error("❌ [OPS_DEGRADED][Safety] state unavailable, failing closed: %s", e)
        return safety_switch.SafetyState(global_disabled=True), True


@router.get("/contract", response_model=ZoomContractOut)
async def get_contract(zoom: float = Query(...), prev_zoom: Optional[float] = None):
    return zoom_contract(zoom, prev_zoom, k_min=config.GLOBE_K_MIN).to_dict()


@router.get("/tiles", response_model=TilesResponse)
async def get_tiles(
    city: str = Query(..., min_length=1),
    zoom: float = Query(...),
    prev_zoom: Optional[float] = None,
    limit: int = Query(200, ge=1, le=500),
    response: Response = None,
    gw: DataGateway = Depends(get_gateway),
):
    city = city.strip().lower()
    contract = zoom_contract(zoom, prev_zoom, k_min=config.GLOBE_K_MIN)
    if not contract.show_heat:
        _mark(response, False)
        return {"city": city, "contract": contract.to_dict(), "tiles": [], "suppressed": 0}

    safety, safety_degraded = await _safety_state(gw)
    try:
        rows, degraded = await gw.heat_tiles(city, limit=limit)
    except Exception as e:
        logger.warning("⚠️ [OPS_DEGRADED][Globe] heat tile read failed city=%s: %s", city, e)
        rows, degraded = [], True

    tiles = [HeatTile.from_row(r) for r in rows or []]
    kept = filter_renderable_tiles(
        tiles,
        contract,
        safety=safety,
        max_age_seconds=config.GLOBE_TILE_MAX_AGE_SECONDS,
    )
    degraded = degraded or safety_degraded
    _mark(response, degraded)
    return {
        "city": city,
        "contract": contract.to_dict(),
        "tiles": [public_tile(t, contract) for t in kept],
        "suppressed": len(tiles) - len(kept),
        "degraded": degraded,
    }


def _served_city(city: str) -> str:
    name = normalize_city(city)
    if city_bounds(name) is None:
        raise HTTPException(status_code=400, detail="Unknown city")
    return name


@router.get("/zones", response_model=ZonesResponse)
async def get_zones(
    zoom: float = Query(...),
    city: str = Query(..., min_length=1),
    prev_zoom: Optional[float] = None,
    response: Response = None,
    gw: DataGateway = Depends(get_gateway),
):
    city = _served_city(city)
    contract = zoom_contract(zoom, prev_zoom, k_min=config.GLOBE_K_MIN)
    if not contract.show_zones:
        _mark(response, False)
        return {"contract": contract.to_dict(), "zones": [], "reason": "zones_hidden"}

    safety, degraded = await _safety_state(gw)
    if safety.is_disabled(city=city):
        _mark(response, degraded)
        return {"contract": contract.to_dict(), "zones": [], "reason": "safety_switch"}

    # Presence has no city column; only rows inside the requested city count.
    rows = rows_in_city(await gw.active_presence(), city)
    points = [p for p in (PresencePoint.from_row(r) for r in rows) if p is not None]
    blobs = calculate_zone_blobs(
        points,
        cell_deg=contract.cell_deg,
        k_min=contract.k_min,
        window_seconds=config.GLOBE_WINDOW_SECONDS,
        half_life_seconds=config.GLOBE_HALF_LIFE_SECONDS,
    )
    _mark(response, degraded)
    return {
        "contract": contract.to_dict(),
        "zones": [b.to_dict() for b in blobs],
        "reason": None if blobs else "below_k",
    }


@cron_router.post(
    "/heat-tiles",
    response_model=HeatTileRebuildResult,
    dependencies=[Depends(require_cron_secret)],
)
async def rebuild_heat_tiles(body: HeatTileRebuild, gw: DataGateway = Depends(get_gateway)):
    city = _served_city(body.city)
    cell_deg = body.cell_deg or zoom_contract(CITY_ZOOM).cell_deg
    window_seconds = body.window_seconds or config.GLOBE_WINDOW_SECONDS

    rows = rows_in_city(await gw.active_presence(), city)
    tiles = aggregate_heat_tiles(
        rows,
        city=city,
        cell_deg=cell_deg,
        window_seconds=window_seconds,
        k_min=config.GLOBE_K_MIN,
        category=body.category,
    )
    upserted = await gw.upsert_heat_tiles(tiles)
    logger.info("✅ [Globe] rebuilt heat tiles city=%s cell_deg=%s upserted=%s", city, cell_deg, upserted)
    return {
        "city": city,
        "cell_deg": cell_deg,
        "window_start": tiles[0]["window_start"] if tiles else None,
        "window_end": tiles[0]["window_end"] if tiles else None,
        "tiles": len(tiles),
        "k_met": sum(1 for t in tiles if t["k_threshold_met"]),
        "upserted": upserted,
        "sample": [t for t in tiles if t["k_threshold_met"]][:5],
    }
