from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional


class ZoomContractOut(BaseModel):
    state: str
    heat_level: str
    cell_deg: Optional[float] = None
    k_min: Optional[int] = None
    show_heat: bool
    show_zones: bool
    labels: Any = False


class PublicTile(BaseModel):
    cell_id: str
    city: Optional[str] = None
    lat: float
    lng: float
    cell_deg: float
    window_start: Optional[str] = None
    window_end: Optional[str] = None
    category: Optional[str] = None
    intensity: float
    count_band: int


class TilesResponse(BaseModel):
    city: str
    contract: ZoomContractOut
    tiles: List[PublicTile] = []
    suppressed: int = 0
    degraded: bool = False


class ZoneBlobOut(BaseModel):
    blob_id: str
    user_count: int
    weight: float
    lat: float
    lng: float
    radius_m: float
    intensity: float


class ZonesResponse(BaseModel):
    contract: ZoomContractOut
    zones: List[ZoneBlobOut] = []
    reason: Optional[str] = None


class HeatTileRebuild(BaseModel):
    city: str = Field(..., min_length=1)
    cell_deg: Optional[float] = Field(default=None, gt=0)
    window_seconds: Optional[int] = Field(default=None, ge=60)
    category: Optional[str] = None


class HeatTileRebuildResult(BaseModel):
    city: str
    cell_deg: float
    window_start: Optional[str] = None
    window_end: Optional[str] = None
    tiles: int
    k_met: int
    upserted: int
    sample: List[Dict[str, Any]] = []
