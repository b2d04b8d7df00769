import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from webapp import config
from webapp.routers import admin, beacons, globe, health, nearby, presence, routing
from webapp.services.rate_limit import FixedWindowLimiter, RateLimitMiddleware
from webapp.utils.logging import configure_logging

logger = logging.getLogger("hm")


def create_app(limiter: FixedWindowLimiter = None) -> FastAPI:
    """
    Build the API application. Every router is mounted under /api.
    """
    configure_logging()
    app = FastAPI(title="HOTMESS backend")

    # Added first so CORS wraps it and 429s still carry CORS headers.
    app.add_middleware(RateLimitMiddleware, limiter=limiter)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health.router, prefix="/api", tags=["Health"])
    app.include_router(globe.router, prefix="/api/globe", tags=["Globe"])
    app.include_router(globe.cron_router, prefix="/api/cron", tags=["Cron"])
    app.include_router(beacons.router, prefix="/api/beacons", tags=["Beacons"])
    app.include_router(nearby.router, prefix="/api/nearby", tags=["Nearby"])
    app.include_router(routing.router, prefix="/api/routing", tags=["Routing"])
    app.include_router(presence.router, prefix="/api/presence", tags=["Presence"])
    app.include_router(admin.router, prefix="/api/admin", tags=["Admin"])

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled exception")
        return JSONResponse(
            {
                "detail": "Unhandled exception",
                "error_type": type(exc).__name__,
                "error": str(exc),
            },
            status_code=500,
        )

    return app
