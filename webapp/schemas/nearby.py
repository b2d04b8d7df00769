from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional


class NearbyCandidate(BaseModel):
    user_id: str
    profile: Optional[Dict[str, Any]] = None
    last_lat: Optional[float] = None
    last_lng: Optional[float] = None
    distance_meters: Optional[int] = None
    eta_seconds: Optional[int] = None
    eta_mode: Optional[str] = None


class NearbyResponse(BaseModel):
    candidates: List[NearbyCandidate] = []
    warnings: Optional[List[str]] = None


class LatLng(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class EtaRequest(BaseModel):
    origin: LatLng
    destination: LatLng
    modes: Optional[List[str]] = None
    ttl_seconds: Optional[int] = None


class ModeEta(BaseModel):
    duration_seconds: Optional[int] = None
    distance_meters: Optional[int] = None
    provider: Optional[str] = None


class EtaResponse(BaseModel):
    walk: Optional[ModeEta] = None
    transit: Optional[ModeEta] = None
    drive: Optional[ModeEta] = None
    bicycle: Optional[ModeEta] = None
