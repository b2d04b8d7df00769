"""App configuration loader (env only, no side-effects beyond dotenv).
Callers are still free to read os.environ directly.
"""

import os
from dotenv import load_dotenv

load_dotenv()


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


SUPABASE_URL = os.environ.get("SUPABASE_URL")
SUPABASE_KEY = (
    os.environ.get("SUPABASE_SERVICE_ROLE_KEY")
    or os.environ.get("SUPABASE_SERVICE_KEY")
    or os.environ.get("SUPABASE_ANON_KEY")
    or os.environ.get("SUPABASE_KEY")
)
GOOGLE_MAPS_API_KEY = os.environ.get("GOOGLE_MAPS_API_KEY")
CRON_SECRET = os.environ.get("CRON_SECRET")

GLOBE_K_MIN = _int_env("GLOBE_K_MIN", 5)
GLOBE_WINDOW_SECONDS = _int_env("GLOBE_WINDOW_SECONDS", 900)
GLOBE_HALF_LIFE_SECONDS = _int_env("GLOBE_HALF_LIFE_SECONDS", 300)
GLOBE_TILE_MAX_AGE_SECONDS = _int_env("GLOBE_TILE_MAX_AGE_SECONDS", 3600)

BACKEND_HOST = os.environ.get("BACKEND_HOST") or "127.0.0.1"
BACKEND_PORT = _int_env("BACKEND_PORT", _int_env("PORT", 8000))
BACKEND_RELOAD = (os.environ.get("BACKEND_RELOAD") or "1") == "1"

CORS_ORIGINS = [
    o.strip()
    for o in (
        os.environ.get("CORS_ORIGINS")
        or "http://localhost:5173,http://127.0.0.1:5173,http://localhost:5174,http://127.0.0.1:5174"
    ).split(",")
    if o.strip()
]

__all__ = [
    "SUPABASE_URL",
    "SUPABASE_KEY",
    "GOOGLE_MAPS_API_KEY",
    "CRON_SECRET",
    "GLOBE_K_MIN",
    "GLOBE_WINDOW_SECONDS",
    "GLOBE_HALF_LIFE_SECONDS",
    "GLOBE_TILE_MAX_AGE_SECONDS",
    "BACKEND_HOST",
    "BACKEND_PORT",
    "BACKEND_RELOAD",
    "CORS_ORIGINS",
]
