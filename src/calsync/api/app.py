"""calsync API: FastAPI application factory.

The app factory creates a FastAPI instance with:
- CORS middleware (configurable origins)
- Lifespan handler that starts and stops the sync scheduler
- Health endpoint at GET /api/health
- The calendar router under /api/calendar
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from calsync import __version__
from calsync.api.deps import wire_service
from calsync.api.middleware import register_error_handlers
from calsync.api.routers.calendar import router as calendar_router
from calsync.service import CalendarService

logger = logging.getLogger(__name__)


def create_app(
    service: CalendarService,
    cors_origins: list[str] | None = None,
    *,
    manage_lifecycle: bool = True,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    service:
        The calendar service every endpoint operates on.
    cors_origins:
        Allowed CORS origins. Defaults to ["http://localhost:5173"].
    manage_lifecycle:
        When true, the lifespan starts the scheduler on startup and shuts the
        service down on exit.
    """
    if cors_origins is None:
        cors_origins = ["http://localhost:5173"]

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if manage_lifecycle:
            await service.start()
        try:
            yield
        finally:
            if manage_lifecycle:
                await service.shutdown()

    app = FastAPI(title="calsync API", version=__version__, lifespan=lifespan)
    app.router.redirect_slashes = False

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)
    wire_service(app, service)
    app.include_router(calendar_router)

    @app.get("/api/health")
    async def health():
        return {"status": "ok", "version": __version__}

    return app
