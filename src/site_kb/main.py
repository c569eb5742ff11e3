"""
Application Entry Point

This module defines the FastAPI application factory, registers all
routers, configures global exception handling and owns the service
lifecycle (database tables, worker pool, HTTP and cache clients).

Design Goals
------------
- Deterministic startup
- Explicit dependency initialization order
- Centralized router registration
- Global exception safety net
- Test-friendly via create_app()
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI

from .api import health_routes, indexing_routes, retrieval_routes
from .config import Settings, get_settings
from .container import ServiceContainer, build_services
from .core.errors import SiteKBError, site_kb_exception_handler, unhandled_exception_handler
from .core.logging_config import configure_logging

logger = logging.getLogger("kb.app")


# ---------------------------------------------------------------------
# Application Factory (Test-Friendly)
# ---------------------------------------------------------------------

def create_app(
    settings: Optional[Settings] = None,
    services: Optional[ServiceContainer] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Parameters
    ----------
    settings : Optional[Settings]
        Configuration. Defaults to `get_settings()`.

    services : Optional[ServiceContainer]
        Pre-built services (tests). Built from `settings` at startup when
        omitted.

    Returns
    -------
    FastAPI
        Fully configured FastAPI application.
    """
    if services is not None:
        settings = services.settings
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        configure_logging(settings.log_level)
        logger.info("Starting site-kb")

        if app.state.services is None:
            app.state.services = build_services(settings)

        await app.state.services.start()
        logger.info("site-kb ready")
        try:
            yield
        finally:
            logger.info("Shutting down site-kb")
            await app.state.services.close()

    app = FastAPI(
        title="site-kb",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.services = services

    # --------------------------------------------------------------
    # Global Exception Handling
    # --------------------------------------------------------------

    app.add_exception_handler(SiteKBError, site_kb_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    # --------------------------------------------------------------
    # Router Registration
    # --------------------------------------------------------------

    app.include_router(health_routes.router)
    app.include_router(indexing_routes.router)
    app.include_router(retrieval_routes.router)

    return app


# ---------------------------------------------------------------------
# Default Application Instance (for Uvicorn/Gunicorn)
# ---------------------------------------------------------------------

app = create_app()
