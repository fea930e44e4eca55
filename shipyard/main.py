"""FastAPI application entry point."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from shipyard import __version__
from shipyard.api.middleware import RequestLoggingMiddleware
from shipyard.api.v1.router import router as v1_router
from shipyard.config import settings
from shipyard.core.exceptions import (
    AuthenticationError,
    InvalidStateTransition,
    NotFoundError,
    ShipyardError,
    StoreError,
    ValidationError,
)
from shipyard.core.scheduler import get_scheduler
from shipyard.utils.logging import configure_logging, get_logger

logger = get_logger(__name__)

ERROR_STATUS_CODES: dict[type[ShipyardError], int] = {
    ValidationError: status.HTTP_400_BAD_REQUEST,
    AuthenticationError: status.HTTP_401_UNAUTHORIZED,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    InvalidStateTransition: status.HTTP_409_CONFLICT,
    StoreError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def status_code_for(exc: ShipyardError) -> int:
    for error_type, code in ERROR_STATUS_CODES.items():
        if isinstance(exc, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    # Startup
    configure_logging()
    logger.info(
        "application.starting",
        version=__version__,
        environment=settings.app_env,
    )
    scheduler = get_scheduler()
    if settings.scheduler_enabled:
        await scheduler.start()

    yield

    # Shutdown
    await scheduler.stop()
    logger.info("application.shutdown")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Shipyard API",
        description="Builds and publishes sites from source-control webhooks",
        version=__version__,
        docs_url="/docs" if settings.app_debug else None,
        redoc_url="/redoc" if settings.app_debug else None,
        lifespan=lifespan,
    )

    # Add middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.is_development else [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    # Register exception handlers
    @app.exception_handler(ShipyardError)
    async def shipyard_error_handler(
        request: Request, exc: ShipyardError
    ) -> JSONResponse:
        """Map domain errors to HTTP responses."""
        status_code = status_code_for(exc)
        logger.warning(
            "request.rejected",
            path=request.url.path,
            error=type(exc).__name__,
            status_code=status_code,
            message=exc.message,
        )
        return JSONResponse(
            status_code=status_code,
            content={
                "success": False,
                "error": {
                    "code": type(exc).__name__.upper(),
                    "message": exc.message,
                    "details": exc.details,
                },
            },
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        """Handle unexpected errors."""
        logger.error(
            "unhandled_exception",
            error=str(exc),
            path=request.url.path,
            exc_info=True,
        )

        message = str(exc) if settings.is_development else "An unexpected error occurred"
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "success": False,
                "error": {
                    "code": "INTERNAL_ERROR",
                    "message": message,
                },
            },
        )

    # Include routers
    app.include_router(v1_router)

    return app


# Create app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "shipyard.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.is_development,
    )
