from pydantic import BaseModel, Field
from typing import Optional


class GoLiveRequest(BaseModel):
    mode: str = Field(..., description="SOCIAL, EVENT or TRAVEL")
    lat: Optional[float] = None
    lng: Optional[float] = None
    minutes: Optional[int] = 60


class ExtendRequest(BaseModel):
    minutes: Optional[int] = 30


class LocationRequest(BaseModel):
    lat: float
    lng: float
