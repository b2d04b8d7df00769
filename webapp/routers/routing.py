import asyncio
import logging
import time
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Request

from globe.geo import bucket_lat_lng, cache_key_for, time_slice
from globe.nearby import clamp_int, normalize_mode
from webapp import config
from webapp.schemas.nearby import EtaRequest, EtaResponse
from webapp.services.auth import get_current_user, get_gateway
from webapp.services.gateway import DataGateway
from webapp.services.rate_limit import client_ip
from webapp.services.routing import approximate_duration_seconds, cache_row, fetch_distance_matrix

logger = logging.getLogger(__name__)

router = APIRouter()

DEFAULT_MODES = ("WALK", "TRANSIT", "DRIVE")
MAX_MODES = 5


def _approx(origin, destination, mode: str) -> Dict[str, Any]:
    distance_m, seconds = approximate_duration_seconds(origin, destination, mode)
    return {"duration_seconds": seconds, "distance_meters": distance_m, "provider": "approx"}


def _response(results: Dict[str, Optional[Dict[str, Any]]]) -> Dict[str, Any]:
    out = {
        "walk": results.get("WALK"),
        "transit": results.get("TRANSIT"),
        "drive": results.get("DRIVE"),
    }
    if results.get("BICYCLE"):
        out["bicycle"] = results["BICYCLE"]
    return out


@router.post("/eta", response_model=EtaResponse, response_model_exclude_unset=True)
async def post_eta(
    body: EtaRequest,
    request: Request,
    user: Dict[str, Any] = Depends(get_current_user),
    gw: DataGateway = Depends(get_gateway),
):
    origin = (body.origin.lat, body.origin.lng)
    destination = (body.destination.lat, body.destination.lng)
    ttl_seconds = clamp_int(body.ttl_seconds, 60, 300, 120)
    modes = list(dict.fromkeys(normalize_mode(m) for m in (body.modes or DEFAULT_MODES)))[:MAX_MODES]

    now_ms = int(time.time() * 1000)
    ip = client_ip(request.headers, request.client.host if request.client else None)
    allowed = await gw.check_routing_rate_limit(
        f"etas:{user['id']}:{ip or 'noip'}:{now_ms // 60000}",
        user["id"],
        ip,
        window_seconds=60,
        max_requests=20,
    )
    if allowed is False:
        raise HTTPException(status_code=429, detail="Rate limit exceeded")

    api_key = config.GOOGLE_MAPS_API_KEY
    if not api_key:
        return _response({mode: _approx(origin, destination, mode) for mode in modes})

    slice_id = time_slice(now_ms, ttl_seconds)
    origin_bucket = bucket_lat_lng(*origin, 2)
    dest_bucket = bucket_lat_lng(*destination, 2)
    keys = {mode: cache_key_for(origin_bucket, dest_bucket, mode, slice_id) for mode in modes}
    cache = await gw.routing_cache_get(list(keys.values()))

    results: Dict[str, Optional[Dict[str, Any]]] = {}
    upserts = []
    for mode in modes:
        cached = cache.get(keys[mode])
        if cached:
            results[mode] = {
                "duration_seconds": cached.get("duration_seconds"),
                "distance_meters": cached.get("distance_meters"),
                "provider": cached.get("provider") or "cache",
            }
            continue

        dm = await asyncio.to_thread(fetch_distance_matrix, api_key, origin, [destination], mode)
        first = dm.results[0] if dm.ok and dm.results else None
        if not first or not first.get("ok"):
            logger.info("[Routing] %s provider miss (%s); using approximation", mode, dm.error or "no route")
            results[mode] = _approx(origin, destination, mode)
            continue

        results[mode] = {
            "duration_seconds": first["duration_seconds"],
            "distance_meters": first["distance_meters"],
            "provider": dm.provider,
        }
        upserts.append(
            cache_row(
                keys[mode],
                origin_bucket,
                dest_bucket,
                mode,
                first["duration_seconds"],
                first["distance_meters"],
                ttl_seconds,
                provider=dm.provider,
            )
        )

    await gw.routing_cache_put(upserts)
    return _response(results)
