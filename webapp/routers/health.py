from fastapi import APIRouter, Depends

from globe.beacons import BeaconRegistry, BeaconType
from webapp import config
from webapp.routers.beacons import get_registry

router = APIRouter()


@router.get("/health")
async def health(registry: BeaconRegistry = Depends(get_registry)):
    return {
        "ok": True,
        "supabase_configured": bool(config.SUPABASE_URL and config.SUPABASE_KEY),
        "routing_provider": "DIST_MATRIX" if config.GOOGLE_MAPS_API_KEY else "approx",
        "beacons_loaded": registry.loaded_at is not None,
        "beacon_count": len(registry),
        "beacon_types": [t.value for t in BeaconType],
    }
