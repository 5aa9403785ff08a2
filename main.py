"""
Contact Sync & Identity Resolution — application entry point.
"""

from __future__ import annotations

import logging
import sys

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.middleware import register_middleware
from api.routes import router as api_router
from auth.routes import router as auth_router
from config.settings import config
from connectors.routes import router as connectors_router
from core.services import build_services
from database.session import async_session_factory, engine, init_models
from jobs.queue import LocalJobQueue
from jobs.worker import register_jobs

logging.basicConfig(
    level=logging.DEBUG if config.debug else logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(name)s — %(message)s",
    stream=sys.stdout,
)
for _noisy in ("httpcore", "httpx", "urllib3", "sqlalchemy.engine"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    app = FastAPI(
        title="Contact Sync & Identity Resolution",
        version="1.0.0",
        description="Syncs CRM / helpdesk contacts into per-user golden records.",
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_middleware(app)

    # Routes
    app.include_router(auth_router, prefix="/api/v1/auth")
    app.include_router(api_router, prefix="/api/v1")
    app.include_router(connectors_router, prefix="/api/v1/connectors")

    @app.on_event("startup")
    async def on_startup():
        if config.debug:
            logger.info("Creating tables (debug mode)…")
            await init_models(engine)

        queue = LocalJobQueue(retries=True, background=True)
        services = build_services(async_session_factory, queue, config)
        await register_jobs(queue, services.jobs, config)
        queue.start()
        app.state.services = services

        logger.info(
            "Providers available: %s",
            ", ".join(p.provider for p in services.registry.list_providers()) or "none",
        )
        logger.info("Application ready to accept requests.")

    @app.on_event("shutdown")
    async def on_shutdown():
        services = getattr(app.state, "services", None)
        if services is not None:
            await services.queue.stop()
        await engine.dispose()

    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=config.host,
        port=config.port,
        reload=config.debug,
        log_level="debug" if config.debug else "info",
    )
