"""
Application Entry Point

Defines the FastAPI operations app. The memory pipeline runs inside the app's
lifespan: it starts (and validates configuration) before the first request is
served and is drained and stopped on shutdown.

Design Goals
------------
- Deterministic startup: configuration errors abort before any subscription
- Explicit dependency wiring through app.state, no module-level singletons
- Global exception safety net
- Test-friendly via create_app(settings, runtime)
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from prometheus_client import make_asgi_app

from .config import Settings
from .core.errors import unhandled_exception_handler
from .runtime import MemoryRuntime

from .api import (
    health_routes,
    memory_routes,
    stats_routes,
)


logger = logging.getLogger("aigis.app")


# ---------------------------------------------------------------------
# Application Factory
# ---------------------------------------------------------------------

def create_app(
    settings: Settings,
    runtime: Optional[MemoryRuntime] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Parameters
    ----------
    settings : Settings
        Validated configuration.

    runtime : Optional[MemoryRuntime]
        Pre-built runtime (tests inject one with fakes). Built from
        `settings` when omitted.

    Returns
    -------
    FastAPI
        Fully configured application.
    """
    runtime = runtime or MemoryRuntime(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await runtime.start()
        logger.info("Configuration validated; pipeline running")
        try:
            yield
        finally:
            await runtime.stop()

    app = FastAPI(
        title="aigis-memory",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.runtime = runtime

    # --------------------------------------------------------------
    # Global Exception Handling
    # --------------------------------------------------------------

    app.add_exception_handler(Exception, unhandled_exception_handler)

    # --------------------------------------------------------------
    # Router Registration
    # --------------------------------------------------------------

    app.include_router(health_routes.router)
    app.include_router(stats_routes.router)
    app.include_router(memory_routes.router)

    if settings.metrics_enabled:
        app.mount("/metrics", make_asgi_app())

    return app
