"""ASGI entrypoint: `uvicorn webapp.main:app`."""

import logging

import uvicorn

from webapp import config
from webapp.app import create_app

logger = logging.getLogger("hm")

app = create_app()

if __name__ == "__main__":
    logger.info("🚀 [Boot] HOTMESS backend on %s:%s reload=%s", config.BACKEND_HOST, config.BACKEND_PORT, config.BACKEND_RELOAD)
    uvicorn.run("webapp.main:app", host=config.BACKEND_HOST, port=config.BACKEND_PORT, reload=config.BACKEND_RELOAD)
