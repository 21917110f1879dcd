# src/ufresher/main.py
"""Main entry point for the U-Fresher coordinator."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session, sessionmaker

from ufresher.api.v1 import (
    auth_router,
    clubs_router,
    communities_router,
    moderation_router,
    rooms_router,
    stream_router,
)
from ufresher.coordinator import Coordinator
from ufresher.core.errors import (
    AlreadyMemberError,
    CoordinatorError,
    InvariantViolationError,
    NotFoundError,
    NotMemberError,
    PermanentStoreError,
    TransientStoreError,
    UnauthenticatedError,
)
from ufresher.core.log import configure_logging
from ufresher.core.settings import Settings, settings as default_settings
from ufresher.services.moderation import ModerationGate

logger = logging.getLogger(__name__)

# Most specific first; the first matching class decides the status code.
_ERROR_STATUS: list[tuple[type[CoordinatorError], int]] = [
    (UnauthenticatedError, status.HTTP_401_UNAUTHORIZED),
    (AlreadyMemberError, status.HTTP_409_CONFLICT),
    (NotMemberError, status.HTTP_403_FORBIDDEN),
    (InvariantViolationError, status.HTTP_409_CONFLICT),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (TransientStoreError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (PermanentStoreError, status.HTTP_500_INTERNAL_SERVER_ERROR),
]


def _status_for(exc: CoordinatorError) -> int:
    for error_type, code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def coordinator_error_handler(request: Request, exc: CoordinatorError) -> JSONResponse:
    """Translate coordinator errors into HTTP responses."""
    code = _status_for(exc)
    if code >= status.HTTP_500_INTERNAL_SERVER_ERROR:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    headers = {"WWW-Authenticate": "Bearer"} if code == status.HTTP_401_UNAUTHORIZED else None
    return JSONResponse(status_code=code, content={"detail": str(exc)}, headers=headers)


def create_app(
    app_settings: Settings | None = None,
    session_factory: sessionmaker[Session] | None = None,
    *,
    gate: ModerationGate | None = None,
) -> FastAPI:
    """Build the FastAPI application around one coordinator."""
    app_settings = app_settings or default_settings
    if session_factory is None:
        from ufresher.db.session import SessionLocal

        session_factory = SessionLocal

    app = FastAPI(
        title="U-Fresher API",
        description="Realtime content and membership coordinator for college communities",
        version=app_settings.app_version,
    )
    app.state.coordinator = Coordinator.build(app_settings, session_factory, gate=gate)

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.cors_origins,
        allow_credentials=app_settings.cors_allow_credentials,
        allow_methods=app_settings.cors_allow_methods,
        allow_headers=app_settings.cors_allow_headers,
    )

    # Add GZip middleware for compression
    app.add_middleware(GZipMiddleware)

    app.add_exception_handler(CoordinatorError, coordinator_error_handler)  # type: ignore[arg-type]

    # Include API routers
    app.include_router(auth_router, prefix="/api/v1")
    app.include_router(communities_router, prefix="/api/v1")
    app.include_router(clubs_router, prefix="/api/v1")
    app.include_router(rooms_router, prefix="/api/v1")
    app.include_router(moderation_router, prefix="/api/v1")
    app.include_router(stream_router, prefix="/api/v1")

    @app.on_event("startup")
    async def on_startup() -> None:
        configure_logging(app_settings.log_level)
        await app.state.coordinator.start()

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        await app.state.coordinator.stop()

    @app.get("/health")
    async def health_check() -> dict[str, str]:
        """Health check endpoint to verify the service is running."""
        return {"status": "ok"}

    @app.get("/")
    async def root() -> dict[str, str]:
        """Root endpoint with basic information about the API."""
        return {
            "name": app_settings.app_name,
            "version": app_settings.app_version,
            "docs": "/docs",
            "redoc": "/redoc",
        }

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("ufresher.main:app", host="0.0.0.0", port=8000, reload=default_settings.debug)
