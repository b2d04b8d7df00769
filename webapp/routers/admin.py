import logging

from fastapi import APIRouter, Depends, HTTPException

from webapp.schemas.safety import SafetyStateOut, SafetySwitchRequest, SafetySwitchResponse
from webapp.services import safety_switch
from webapp.services.auth import get_gateway
from webapp.services.gateway import DataGateway

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/safety-switch", response_model=SafetyStateOut)
async def get_safety_switch(gw: DataGateway = Depends(get_gateway)):
    try:
        state = await safety_switch.load_state(gw)
    except Exception:
        logger.exception("[Safety] failed to load state")
        raise HTTPException(status_code=500, detail="Failed to get safety state")
    return state.to_dict()


@router.post("/safety-switch", response_model=SafetySwitchResponse)
async def post_safety_switch(body: SafetySwitchRequest, gw: DataGateway = Depends(get_gateway)):
    if not body.admin_id:
        raise HTTPException(status_code=401, detail="Admin authentication required")
    if body.action not in safety_switch.ACTIONS:
        raise HTTPException(status_code=400, detail="Invalid action")
    try:
        state = await safety_switch.switch(
            gw,
            body.action,
            body.target,
            admin_id=body.admin_id,
            reason=body.reason,
            timestamp=body.timestamp,
        )
    except Exception:
        logger.exception("[Safety] failed to apply %s", body.action)
        raise HTTPException(status_code=500, detail="Failed to apply safety switch")
    return {"success": True, "state": state.to_dict()}
