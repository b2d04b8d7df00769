from pydantic import BaseModel
from typing import Any, Dict, List, Optional


class BeaconOut(BaseModel):
    id: str
    type: str
    lat: float
    lng: float
    intensity: float
    expires_at: Optional[str] = None
    meta: Optional[Dict[str, Any]] = None
    distance_meters: Optional[int] = None


class BeaconsResponse(BaseModel):
    beacons: List[BeaconOut] = []
    count: int = 0
    loaded_at: Optional[str] = None


class BeaconChangeResult(BaseModel):
    applied: bool
    beacon_id: Optional[str] = None
    table: Optional[str] = None
    type: Optional[str] = None
