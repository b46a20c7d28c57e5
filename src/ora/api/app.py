"""ORA API: FastAPI application factory.

The app factory creates a FastAPI instance with:
- CORS middleware (configurable origins)
- Lifespan handler that installs the services and closes them on shutdown
- Health endpoint at GET /api/health
- The consent and sync routers
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ora import __version__
from ora.api.deps import OraServices, init_services, shutdown_services
from ora.api.middleware import register_error_handlers
from ora.api.models import HealthResponse
from ora.api.routers.consent import router as consent_router
from ora.api.routers.sync import router as sync_router

logger = logging.getLogger(__name__)


def create_app(
    services: OraServices,
    cors_origins: list[str] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    services:
        Store, HTTP client and configuration the routes operate on.
    cors_origins:
        Allowed CORS origins.  Defaults to ``["*"]``; the endpoints are
        authenticated by bearer tokens, never by cookies.
    """
    if cors_origins is None:
        cors_origins = ["*"]

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        init_services(services)
        logger.info("ORA API started (consent configured: %s)", services.consent_configured)
        yield
        await shutdown_services()

    app = FastAPI(
        title="ORA Calendar API",
        version=__version__,
        lifespan=lifespan,
    )
    app.router.redirect_slashes = False

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=False,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Cron-Secret"],
    )

    register_error_handlers(app)

    app.include_router(consent_router)
    app.include_router(sync_router)

    @app.get("/api/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return HealthResponse()

    return app
