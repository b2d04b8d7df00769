import hmac
import logging
from typing import Any, Dict, Optional

from fastapi import Depends, Header, HTTPException

from webapp import config
from webapp.services.gateway import DataGateway

logger = logging.getLogger(__name__)


def get_gateway() -> DataGateway:
    return DataGateway()


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_current_user(
    authorization: Optional[str] = Header(default=None),
    gw: DataGateway = Depends(get_gateway),
) -> Dict[str, Any]:
    token = bearer_token(authorization)
    if not token:
        raise HTTPException(status_code=401, detail="Missing Authorization bearer token")
    user = await gw.get_user(token)
    if not user or not user.get("id"):
        raise HTTPException(status_code=401, detail="Invalid auth token")
    return user


def require_cron_secret(x_cron_secret: Optional[str] = Header(default=None)) -> None:
    expected = config.CRON_SECRET
    if not expected:
        logger.error("❌ [Cron] CRON_SECRET not configured; refusing request")
        raise HTTPException(status_code=503, detail="CRON_SECRET not configured")
    if not x_cron_secret or not hmac.compare_digest(x_cron_secret, expected):
        raise HTTPException(status_code=401, detail="Invalid cron secret")


__all__ = ["get_gateway", "bearer_token", "get_current_user", "require_cron_secret"]
