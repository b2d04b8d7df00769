import hashlib
import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

RATE_LIMIT_MESSAGE = "Too many requests, please try again later."


@dataclass(frozen=True)
class RouteLimit:
    window_seconds: int
    max_requests: int
    key_by: str = "ip"


DEFAULT_LIMIT = RouteLimit(60, 60, "ip")

# First matching prefix wins.
ROUTE_LIMITS: Tuple[Tuple[str, RouteLimit], ...] = (
    ("/api/admin", RouteLimit(60, 30, "user")),
    ("/api/nearby", RouteLimit(60, 60, "user")),
    ("/api/routing", RouteLimit(60, 30, "user")),
    ("/api/presence", RouteLimit(60, 30, "user")),
    ("/api/globe", RouteLimit(60, 120, "ip")),
    ("/api/beacons", RouteLimit(60, 120, "ip")),
    ("/api/cron", RouteLimit(60, 5, "ip")),
)


@dataclass
class LimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float
    count: int

    def retry_after(self, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        return max(0, math.ceil(self.reset_at - now))


def route_limit(path: str) -> Tuple[str, RouteLimit]:
    for pattern, limit in ROUTE_LIMITS:
        if path.startswith(pattern):
            return pattern, limit
    return "default", DEFAULT_LIMIT


def client_ip(headers, peer: Optional[str] = None) -> str:
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return headers.get("x-real-ip") or peer or "unknown"


def rate_limit_key(headers, limit: RouteLimit, peer: Optional[str] = None) -> str:
    if limit.key_by == "user":
        auth = headers.get("authorization")
        if auth:
            token = auth.replace("Bearer ", "", 1)
            # JWT headers are identical across users, so digest the whole token.
            return f"user:{hashlib.sha256(token.encode()).hexdigest()[:16]}"
    return f"ip:{client_ip(headers, peer)}"


class FixedWindowLimiter:
    """Per-key request counters in fixed windows, guarded by a lock."""

    def __init__(self, clock: Callable[[], float] = time.time, max_keys: int = 10000):
        self._clock = clock
        self._max_keys = max_keys
        self._windows: Dict[str, Dict[str, float]] = {}
        self._lock = threading.Lock()

    def hit(self, key: str, window_seconds: int, max_requests: int) -> LimitResult:
        now = self._clock()
        with self._lock:
            entry = self._windows.get(key)
            if entry and entry["start"] > now - window_seconds:
                entry["count"] += 1
            else:
                if len(self._windows) >= self._max_keys:
                    self._prune(now)
                entry = {"start": now, "count": 1, "expires_at": now + window_seconds * 2}
                self._windows[key] = entry
            count = int(entry["count"])
            return LimitResult(
                allowed=count <= max_requests,
                limit=max_requests,
                remaining=max(0, max_requests - count),
                reset_at=entry["start"] + window_seconds,
                count=count,
            )

    def _prune(self, now: float) -> None:
        for k in [k for k, v in self._windows.items() if v["expires_at"] < now]:
            self._windows.pop(k, None)

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Route-aware fixed-window limits for /api; headers only, never the body."""

    def __init__(self, app, limiter: Optional[FixedWindowLimiter] = None):
        super().__init__(app)
        self.limiter = limiter or FixedWindowLimiter()

    async def dispatch(self, request, call_next):
        path = request.url.path
        if not path.startswith("/api") or request.method == "OPTIONS":
            return await call_next(request)

        pattern, limit = route_limit(path)
        peer = request.client.host if request.client else None
        key = f"{rate_limit_key(request.headers, limit, peer)}:{pattern}"
        result = self.limiter.hit(key, limit.window_seconds, limit.max_requests)
        headers = {
            "X-RateLimit-Limit": str(limit.max_requests),
            "X-RateLimit-Remaining": str(result.remaining),
            "X-RateLimit-Reset": str(math.ceil(result.reset_at)),
        }

        if not result.allowed:
            retry_after = result.retry_after()
            logger.warning("[RateLimit] blocked key=%s pattern=%s count=%s", key.split(":")[0], pattern, result.count)
            headers["Retry-After"] = str(retry_after)
            return JSONResponse(
                status_code=429,
                content={"error": RATE_LIMIT_MESSAGE, "retryAfter": retry_after},
                headers=headers,
            )

        response = await call_next(request)
        for name, value in headers.items():
            response.headers[name] = value
        return response


__all__ = [
    "RouteLimit",
    "ROUTE_LIMITS",
    "DEFAULT_LIMIT",
    "LimitResult",
    "FixedWindowLimiter",
    "RateLimitMiddleware",
    "route_limit",
    "client_ip",
    "rate_limit_key",
]
