from pydantic import BaseModel
from typing import List, Optional


class SafetyStateOut(BaseModel):
    disabled_cities: List[str] = []
    disabled_categories: List[str] = []
    global_disabled: bool = False


class SafetySwitchRequest(BaseModel):
    action: Optional[str] = None
    target: Optional[str] = None
    reason: Optional[str] = None
    admin_id: Optional[str] = None
    timestamp: Optional[str] = None


class SafetySwitchResponse(BaseModel):
    success: bool
    state: SafetyStateOut
