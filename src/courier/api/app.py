"""FastAPI application for Courier."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from courier import __version__
from courier.config import Settings
from courier.exceptions import (
    AuthenticationError,
    ConflictError,
    CourierError,
    NotFoundError,
    NotRetryableError,
    ValidationError,
)
from courier.logging import configure_logging, get_logger
from courier.webhooks import WebhookService

from .router import router, set_service

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application lifespan.

    Creates the WebhookService, starts its dispatch workers and retry
    scheduler on startup, and drains and stops them on shutdown.
    """
    settings: Settings = app.state.settings

    configure_logging(level=settings.log_level, format=settings.log_format)
    logger.info(
        "Starting Courier API",
        env=settings.env,
        store="postgres" if settings.database_url else "memory",
        auth_enabled=settings.is_auth_enabled,
    )

    service = WebhookService.create(settings)
    await service.initialize()
    set_service(service)

    yield

    set_service(None)
    await service.close()
    logger.info("Courier API stopped")


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create a FastAPI application.

    Args:
        settings: Optional settings. Uses environment if None.

    Returns:
        Configured FastAPI application.

    Example:
        ```python
        from courier.api import create_app

        app = create_app()
        # Run with: uvicorn courier.api:app --reload
        ```
    """
    if settings is None:
        settings = Settings()

    app = FastAPI(
        title="Courier",
        description="Signed, retried webhook delivery for multi-tenant applications.",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.settings = settings

    if settings.cors_enabled:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_allow_origins,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
        """Handle validation errors with 400 status."""
        logger.warning(
            "Validation error", field=exc.field, error=exc.message, path=str(request.url)
        )
        return JSONResponse(status_code=400, content=exc.to_dict())

    @app.exception_handler(NotRetryableError)
    async def not_retryable_error_handler(
        request: Request, exc: NotRetryableError
    ) -> JSONResponse:
        """Handle manual retries of ineligible deliveries with 400 status."""
        logger.info(
            "Manual retry rejected",
            delivery_id=exc.delivery_id,
            status=exc.status,
            path=str(request.url),
        )
        return JSONResponse(status_code=400, content=exc.to_dict())

    @app.exception_handler(NotFoundError)
    async def not_found_error_handler(request: Request, exc: NotFoundError) -> JSONResponse:
        """Handle not found errors with 404 status."""
        logger.info(
            "Resource not found",
            resource_type=exc.resource_type,
            resource_id=exc.resource_id,
            path=str(request.url),
        )
        return JSONResponse(status_code=404, content=exc.to_dict())

    @app.exception_handler(AuthenticationError)
    async def authentication_error_handler(
        request: Request, exc: AuthenticationError
    ) -> JSONResponse:
        """Handle authentication errors with 401 status."""
        logger.warning("Authentication failed", error=exc.message, path=str(request.url))
        return JSONResponse(
            status_code=401,
            content=exc.to_dict(),
            headers={"WWW-Authenticate": "Bearer"},
        )

    @app.exception_handler(ConflictError)
    async def conflict_error_handler(request: Request, exc: ConflictError) -> JSONResponse:
        """Handle lost status races with 409 status."""
        logger.info("Delivery conflict", delivery_id=exc.delivery_id, path=str(request.url))
        return JSONResponse(status_code=409, content=exc.to_dict())

    @app.exception_handler(CourierError)
    async def courier_error_handler(request: Request, exc: CourierError) -> JSONResponse:
        """Handle all other Courier errors with 500 status."""
        logger.error("Courier error", error=exc.message, code=exc.code, path=str(request.url))
        return JSONResponse(status_code=500, content=exc.to_dict())

    app.include_router(router, prefix="/api/v1")

    return app


# Default app instance for uvicorn
app = create_app()
