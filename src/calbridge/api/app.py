"""Webhook API: FastAPI application factory.

The app factory creates a FastAPI instance with:
- Lifespan handler that builds the ``BridgeService`` from configuration when
  none was injected, and shuts it down on exit
- Health endpoint at GET /health
- Event routes (both sync directions) and operator mapping routes
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from calbridge.api.middleware import register_error_handlers
from calbridge.api.routers.events import router as events_router
from calbridge.api.routers.mappings import router as mappings_router
from calbridge.config import BridgeConfig, load_config
from calbridge.service import BridgeService

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle for the bridge service."""
    owns_service = app.state.service is None
    if owns_service:
        config: BridgeConfig = app.state.config or load_config()
        missing = config.missing_credentials()
        if missing:
            logger.warning("Missing required environment variables: %s", ", ".join(missing))
        app.state.service = BridgeService.from_config(config)
        logger.info(
            "Bridge started (calendar=%s, mappings=%s)",
            config.google.default_calendar_id,
            config.mapping.path,
        )

    yield

    if owns_service:
        await app.state.service.shutdown()
        app.state.service = None


def create_app(
    service: BridgeService | None = None,
    config: BridgeConfig | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    service:
        Pre-built service (tests, embedding). When ``None`` the lifespan
        handler builds one from *config*.
    config:
        Configuration used when no service is injected; defaults to
        ``load_config()`` at startup.
    """
    app = FastAPI(
        title="calbridge",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.service = service
    app.state.config = config

    register_error_handlers(app)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    app.include_router(events_router)
    app.include_router(mappings_router)
    return app
