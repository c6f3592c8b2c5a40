"""
FastAPI application factory for the Invoicy dashboard API.

This module creates the main FastAPI app with:
- CORS configuration for the frontend
- Sync engine lifecycle management
- Dashboard routes under /api/v1
- Mapping of engine errors to HTTP responses
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .._version import __version__
from ..errors import (
    CommitError,
    FetchError,
    InvalidTransition,
    StaleHandleError,
    SubscriptionError,
    SyncError,
    UploadError,
)
from ..main import SyncEngine
from .config import Settings
from .routes import router

logger = logging.getLogger(__name__)

ERROR_STATUS: dict[type[SyncError], int] = {
    InvalidTransition: 409,
    StaleHandleError: 410,
    CommitError: 502,
    FetchError: 502,
    UploadError: 502,
    SubscriptionError: 503,
}


def status_for(error: SyncError) -> int:
    for error_type in type(error).__mro__:
        if error_type in ERROR_STATUS:
            return ERROR_STATUS[error_type]
    return 500


def create_app(engine: SyncEngine | None = None, settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        engine: Engine to serve; built from the environment if omitted
        settings: API settings; loaded from the environment if omitted
    """
    settings = settings or Settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Manage sync engine lifecycle."""
        sync_engine = engine or SyncEngine()
        await sync_engine.start()
        app.state.engine = sync_engine
        app.state.settings = settings

        yield

        await sync_engine.stop()

    app = FastAPI(
        title="Invoicy Dashboard API",
        description="Live views of invoices, logs and field configuration.",
        version=__version__,
        lifespan=lifespan,
    )

    # CORS for frontend
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(SyncError)
    async def sync_error_handler(request: Request, exc: SyncError) -> JSONResponse:
        status_code = status_for(exc)
        if status_code >= 500:
            logger.warning(
                f"Request failed: {exc.message}",
                extra={"path": request.url.path, "code": exc.code},
            )
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    app.include_router(router, prefix="/api/v1")

    @app.get("/health")
    async def health(request: Request):
        sync_engine: SyncEngine = request.app.state.engine
        return {"status": "healthy", "service": "invoicy-sync", **sync_engine.stats}

    return app
