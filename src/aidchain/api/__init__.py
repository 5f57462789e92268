"""aidchain API service.

FastAPI application exposing the delivery workflow:
- One endpoint per workflow action (create, authorize, receive, prepare,
  ready, deliver, cancel)
- Delivery reads, audit history and hash-chain verification
- Status counts and per-role pending work queues

This module provides the app factory pattern for creating configured
FastAPI instances suitable for testing and production deployment.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from aidchain.api.middleware import (
    ActorHeaderMiddleware,
    ErrorHandlerMiddleware,
    RequestIDMiddleware,
)
from aidchain.api.routers import deliveries_router
from aidchain.core.config import AuthSettings

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from aidchain.core.config import Settings

logger = logging.getLogger(__name__)

API_TITLE = "aidchain API"
API_DESCRIPTION = """
Humanitarian-aid delivery authorization and fulfillment.

## Namespaces

- **/api/deliveries/** - Delivery workflow actions, history and work queues

## Documentation

- OpenAPI spec: `/api/openapi.json`
- Swagger UI: `/api/docs`
- ReDoc: `/api/redoc`
"""


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Dispose of the database engine on shutdown."""
    yield
    from aidchain.db import close_engine

    await close_engine()


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure a FastAPI application instance.

    This factory function creates a configured FastAPI app with:
    - The deliveries router mounted under /api
    - Request ID middleware for request correlation
    - Error handling middleware mapping workflow failures to HTTP statuses
    - Actor identity from trusted gateway headers (unless disabled)
    - CORS middleware (configurable via settings)

    Args:
        settings: Optional Settings instance. If not provided, default
            workflow and auth settings are used.

    Returns:
        Configured FastAPI application ready to serve requests.

    Example:
        app = create_app()

        # For testing
        test_settings = Settings(environment="dev", debug=True)
        app = create_app(test_settings)
    """
    version = settings.app_version if settings else "0.1.0"

    app = FastAPI(
        title=API_TITLE,
        description=API_DESCRIPTION,
        version=version,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json",
        lifespan=lifespan,
    )

    # Store settings in app state for access in routes
    app.state.settings = settings

    _add_middleware(app, settings)

    app.include_router(deliveries_router, prefix="/api")

    @app.get("/health", tags=["health"])
    async def health_check() -> dict[str, str]:
        """Health check endpoint for container orchestration."""
        return {"status": "healthy"}

    logger.info("aidchain API application created (version=%s)", version)

    return app


def _add_middleware(app: FastAPI, settings: Settings | None) -> None:
    """Add middleware to the application.

    Starlette runs the last added middleware first, so request IDs are set
    before errors are rendered and the actor is resolved.

    Args:
        app: The FastAPI application instance.
        settings: Optional settings for middleware configuration.
    """
    auth_settings = settings.auth if settings else AuthSettings()
    if auth_settings.trusted_headers:
        app.add_middleware(ActorHeaderMiddleware, settings=auth_settings)

    app.add_middleware(ErrorHandlerMiddleware)

    allowed_origins = ["http://localhost:3000", "http://localhost:8000"]
    if settings and settings.is_production:
        allowed_origins = []

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )

    app.add_middleware(RequestIDMiddleware)
