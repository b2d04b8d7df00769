import asyncio
import logging
import time
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request

from globe.geo import Point, bucket_lat_lng, bucket_point, cache_key_for, make_point, time_slice
from globe.nearby import NearbyParams, normalize_mode, sort_by_eta, to_public_profile
from webapp import config
from webapp.schemas.nearby import NearbyResponse
from webapp.services.auth import get_current_user, get_gateway
from webapp.services.gateway import DataGateway
from webapp.services.rate_limit import client_ip
from webapp.services.routing import cache_row, fetch_distance_matrix

logger = logging.getLogger(__name__)

router = APIRouter()

MISSING_KEY_WARNING = "GOOGLE_MAPS_API_KEY missing; returning distance only"


def _metres(val: Any) -> Optional[int]:
    if isinstance(val, bool) or not isinstance(val, (int, float)):
        return None
    return int(round(val))


def _candidate(c: Dict[str, Any], profiles: Dict[str, Dict[str, Any]], eta_seconds=None, eta_mode=None):
    return {
        "user_id": str(c.get("user_id")),
        "profile": to_public_profile(profiles.get(str(c.get("user_id")))),
        "last_lat": c.get("last_lat"),
        "last_lng": c.get("last_lng"),
        "distance_meters": _metres(c.get("distance_meters")),
        "eta_seconds": eta_seconds,
        "eta_mode": eta_mode,
    }


async def _attach_etas(
    gw: DataGateway,
    request: Request,
    user_id: str,
    origin: Point,
    candidates: List[Dict[str, Any]],
    profiles: Dict[str, Dict[str, Any]],
    mode: str,
    params: NearbyParams,
    api_key: str,
) -> List[Dict[str, Any]]:
    """Paid tier: ETAs for the closest top-N, served from routing_cache when possible."""
    now_ms = int(time.time() * 1000)
    slice_id = time_slice(now_ms, params.eta_ttl_seconds)
    origin_bucket = bucket_lat_lng(origin.lat, origin.lng, 2)

    def _dest_bucket(c: Dict[str, Any]) -> Optional[str]:
        pt = make_point(c.get("last_lat"), c.get("last_lng"))
        return bucket_lat_lng(pt.lat, pt.lng, 2) if pt else None

    def _key(c: Dict[str, Any]) -> Optional[str]:
        dest = _dest_bucket(c)
        return cache_key_for(origin_bucket, dest, mode, slice_id) if dest else None

    pairs = []
    for c in candidates[: params.eta_top_n]:
        key = _key(c)
        if key:
            pairs.append((c, key))
    cache = await gw.routing_cache_get([k for _, k in pairs])

    missing = [(c, k) for c, k in pairs if k not in cache]
    if missing:
        ip = client_ip(request.headers, request.client.host if request.client else None)
        bucket_key = f"nearby:{user_id}:{ip or 'noip'}:{now_ms // 60000}"
        allowed = await gw.check_routing_rate_limit(bucket_key, user_id, ip, window_seconds=60, max_requests=30)
        if allowed is False:
            logger.info("[Nearby] routing rate limit hit user=%s; distance only", user_id)
            return [_candidate(c, profiles, None, mode) for c in candidates]

        dm = await asyncio.to_thread(
            fetch_distance_matrix,
            api_key,
            (origin.lat, origin.lng),
            [(float(c["last_lat"]), float(c["last_lng"])) for c, _ in missing],
            mode,
        )
        if dm.ok:
            upserts = []
            for (c, key), r in zip(missing, dm.results):
                if not r.get("ok"):
                    continue
                row = cache_row(
                    key,
                    origin_bucket,
                    _dest_bucket(c),
                    mode,
                    r["duration_seconds"],
                    r["distance_meters"],
                    params.eta_ttl_seconds,
                    provider=dm.provider,
                )
                cache[key] = row
                upserts.append(row)
            await gw.routing_cache_put(upserts)
        else:
            logger.warning("[Nearby] distance matrix failed: %s", dm.error)

    out = []
    for c in candidates:
        key = _key(c)
        cached = cache.get(key) if key else None
        eta = cached.get("duration_seconds") if cached else None
        out.append(_candidate(c, profiles, eta, mode if eta else None))
    return sort_by_eta(out)


@router.get("", response_model=NearbyResponse)
async def get_nearby(
    request: Request,
    lat: Optional[str] = None,
    lng: Optional[str] = None,
    accuracy_m: Optional[str] = None,
    approximate: Optional[str] = None,
    radius_m: Optional[str] = None,
    limit: Optional[str] = None,
    eta_top_n: Optional[str] = None,
    eta_ttl_seconds: Optional[str] = None,
    user: Dict[str, Any] = Depends(get_current_user),
    gw: DataGateway = Depends(get_gateway),
):
    if not user.get("email"):
        raise HTTPException(status_code=401, detail="Invalid auth token")
    viewer = make_point(lat, lng)
    if viewer is None:
        raise HTTPException(status_code=400, detail="Missing lat/lng query params")

    params = NearbyParams.from_query(
        radius_m=radius_m,
        limit=limit,
        accuracy_m=accuracy_m,
        eta_top_n=eta_top_n,
        eta_ttl_seconds=eta_ttl_seconds,
    )
    stored = bucket_point(viewer.lat, viewer.lng, 2) if str(approximate or "").lower() == "true" else viewer

    _, profile = await gw.get_viewer_profile(user["id"], user.get("email"))
    profile = profile or {}
    hide = bool(profile.get("privacy_hide_proximity"))

    # Exact coordinates only go to the private presence table.
    await gw.upsert_presence_location(user["id"], viewer.lat, viewer.lng, params.accuracy_m, hide)
    await gw.upsert_user_location(user, stored.lat, stored.lng, params.accuracy_m, hide)
    if hide:
        return {"candidates": []}

    meta = user.get("user_metadata") or {}
    tier = str(profile.get("subscription_tier") or meta.get("subscription_tier") or "FREE").upper()
    mode = normalize_mode(profile.get("default_travel_mode") or meta.get("default_travel_mode") or "WALK")

    try:
        rows, source = await gw.nearby_candidates(
            stored.lat, stored.lng, params.radius_m, params.limit, exclude_user_id=user["id"]
        )
    except Exception as e:
        logger.exception("[Nearby] candidate lookup failed")
        raise HTTPException(status_code=500, detail=f"Failed to fetch nearby candidates: {e}")

    candidates = [r for r in rows if isinstance(r, dict) and r.get("user_id")]
    profiles = await gw.fetch_profiles([c.get("user_id") for c in candidates])
    logger.info("[Nearby] user=%s tier=%s source=%s candidates=%s", user["id"], tier, source, len(candidates))

    if tier != "PAID":
        return {"candidates": [_candidate(c, profiles) for c in candidates]}

    api_key = config.GOOGLE_MAPS_API_KEY
    if not api_key:
        return {
            "candidates": [_candidate(c, profiles, None, mode) for c in candidates],
            "warnings": [MISSING_KEY_WARNING],
        }

    with_eta = await _attach_etas(gw, request, user["id"], stored, candidates, profiles, mode, params, api_key)
    return {"candidates": with_eta}
