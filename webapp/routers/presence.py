from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException

from webapp.schemas.presence import ExtendRequest, GoLiveRequest, LocationRequest
from webapp.services import presence as presence_service
from webapp.services.auth import get_current_user, get_gateway
from webapp.services.gateway import DataGateway
from webapp.services.presence import PresenceError

router = APIRouter()


def _raise(e: PresenceError):
    raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post("/live")
async def go_live(
    body: GoLiveRequest,
    user: Dict[str, Any] = Depends(get_current_user),
    gw: DataGateway = Depends(get_gateway),
):
    try:
        return await presence_service.go_live(gw, user["id"], body.mode, body.lat, body.lng, body.minutes)
    except PresenceError as e:
        _raise(e)


@router.delete("/live")
async def stop_live(user: Dict[str, Any] = Depends(get_current_user), gw: DataGateway = Depends(get_gateway)):
    return await presence_service.stop_live(gw, user["id"])


@router.post("/extend")
async def extend_live(
    body: Optional[ExtendRequest] = None,
    user: Dict[str, Any] = Depends(get_current_user),
    gw: DataGateway = Depends(get_gateway),
):
    minutes = body.minutes if body else None
    return await presence_service.extend_live(gw, user["id"], minutes)


@router.post("/location")
async def update_location(
    body: LocationRequest,
    user: Dict[str, Any] = Depends(get_current_user),
    gw: DataGateway = Depends(get_gateway),
):
    try:
        return await presence_service.update_live_location(gw, user["id"], body.lat, body.lng)
    except PresenceError as e:
        _raise(e)


@router.get("/me")
async def my_presence(user: Dict[str, Any] = Depends(get_current_user), gw: DataGateway = Depends(get_gateway)):
    return {"presence": await presence_service.current(gw, user["id"])}


@router.get("/count")
async def presence_count(mode: Optional[str] = None, gw: DataGateway = Depends(get_gateway)):
    try:
        count = await presence_service.active_count(gw, mode)
    except PresenceError as e:
        _raise(e)
    return {"count": count, "mode": mode.upper() if mode else None}
