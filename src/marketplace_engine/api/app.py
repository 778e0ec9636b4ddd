"""FastAPI application factory."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from marketplace_engine.api.routes import (
    health_router,
    orders_router,
    payments_router,
    webhooks_router,
)
from marketplace_engine.config import EngineConfig, get_settings
from marketplace_engine.database import init_db
from marketplace_engine.errors import (
    ArtifactCreationFailure,
    ConcurrencyConflict,
    NotFoundError,
    ProviderCommunicationError,
    ValidationError,
)
from marketplace_engine.providers.base import PaymentProvider
from marketplace_engine.providers.stub import StubProvider
from marketplace_engine.services.state_machine import InvalidTransitionError

logger = logging.getLogger(__name__)

# Engine error -> (HTTP status, error code)
ERROR_RESPONSES: dict[type[Exception], tuple[int, str]] = {
    ValidationError: (status.HTTP_400_BAD_REQUEST, "VALIDATION_ERROR"),
    NotFoundError: (status.HTTP_404_NOT_FOUND, "NOT_FOUND"),
    InvalidTransitionError: (status.HTTP_409_CONFLICT, "INVALID_TRANSITION"),
    ProviderCommunicationError: (status.HTTP_502_BAD_GATEWAY, "PROVIDER_UNAVAILABLE"),
    ConcurrencyConflict: (status.HTTP_503_SERVICE_UNAVAILABLE, "CONCURRENCY_CONFLICT"),
    ArtifactCreationFailure: (status.HTTP_500_INTERNAL_SERVER_ERROR, "ARTIFACT_CREATION_FAILED"),
}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    if app.state.session_factory is None:
        _, app.state.session_factory = init_db()
    yield


def create_app(
    *,
    session_factory: Callable[[], Session] | None = None,
    provider: PaymentProvider | None = None,
    engine_config: EngineConfig | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Marketplace Engine API",
        description="Order and payment reconciliation for the marketplace and ticketing backend",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.session_factory = session_factory
    app.state.provider = provider or StubProvider()
    app.state.engine_config = engine_config or get_settings().engine_config()

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Exception handlers
    async def engine_error_handler(request: Request, exc: Exception) -> JSONResponse:
        """Map engine errors to HTTP responses."""
        status_code, code = next(
            response for error_type, response in ERROR_RESPONSES.items()
            if isinstance(exc, error_type)
        )
        if status_code >= 500:
            logger.error("%s on %s: %s", code, request.url.path, exc)
        return JSONResponse(
            status_code=status_code,
            content={"detail": str(exc), "code": code},
        )

    for error_type in ERROR_RESPONSES:
        app.add_exception_handler(error_type, engine_error_handler)

    @app.exception_handler(Exception)
    async def general_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        """Handle unexpected exceptions."""
        logger.exception("Unhandled error on %s", request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "detail": "An unexpected error occurred",
                "code": "INTERNAL_ERROR",
            },
        )

    # Include routers
    app.include_router(health_router)
    app.include_router(webhooks_router, prefix="/api/v1")
    app.include_router(payments_router, prefix="/api/v1")
    app.include_router(orders_router, prefix="/api/v1")

    return app


# Default app instance for uvicorn
app = create_app()
