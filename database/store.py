import os
import logging
import threading
from typing import Optional

from dotenv import load_dotenv
from supabase import create_client, Client

# Safety net: load .env on import so SUPABASE_* exist even if uvicorn misses it.
load_dotenv()

logger_env = logging.getLogger("hm.env")
logger = logging.getLogger("hm")

_client: Optional[Client] = None
_client_lock = threading.Lock()


def _resolve_key() -> Optional[str]:
    return (
        os.environ.get("SUPABASE_SERVICE_ROLE_KEY")
        or os.environ.get("SUPABASE_SERVICE_KEY")
        or os.environ.get("SUPABASE_ANON_KEY")
        or os.environ.get("SUPABASE_KEY")
    )


def key_mode() -> str:
    if os.environ.get("SUPABASE_SERVICE_ROLE_KEY") or os.environ.get("SUPABASE_SERVICE_KEY"):
        return "SERVICE_ROLE"
    return "ANON"


def get_supabase() -> Client:
    """
    Return the shared Supabase client, creating it on first use.
    Raises RuntimeError when the environment is not configured.
    """
    global _client
    if _client is not None:
        return _client
    with _client_lock:
        if _client is not None:
            return _client
        url = os.environ.get("SUPABASE_URL")
        key = _resolve_key()
        if not url or not url.startswith("https://"):
            raise RuntimeError(
                f"CRITICAL: SUPABASE_URL missing/invalid: {url!r}. "
                "Check .env and runtime env loading."
            )
        if not key:
            raise RuntimeError("CRITICAL: SUPABASE_KEY missing. Check .env and runtime env loading.")

        logger_env.info("[ENV] SUPABASE_URL loaded (prefix): %s...", url[:24])
        _client = create_client(url, key)
        if key_mode() == "SERVICE_ROLE":
            logger.info("[DB] Mode: SERVICE_ROLE")
        else:
            logger.warning("[DB] Mode: ANON (WARNING: backend running restricted)")
        return _client


def reset_supabase() -> None:
    """Drop the cached client (tests and key rotation)."""
    global _client
    with _client_lock:
        _client = None


__all__ = ["get_supabase", "reset_supabase", "key_mode"]
