# app/main.py
"""
Application entry point: service container lifecycle, routers and middleware.
"""

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.config import settings
from app.container import ServiceContainer
from app.infrastructure.observability.logging import get_logger, setup_logging
from app.middleware import RequestContextMiddleware
from app.routes import health, match, offer
from app.services.compatibility import validate_compatibility_table

# Setup logging before creating the app
setup_logging(log_level=settings.LOG_LEVEL)
logger = get_logger(__name__)


def create_app(container: ServiceContainer | None = None) -> FastAPI:
    """Build the FastAPI app. Tests pass a container wired with fakes."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "Application starting",
            environment=settings.environment,
            debug=settings.debug,
            storage_backend=settings.STORAGE_BACKEND,
        )

        validate_compatibility_table()

        services = container or ServiceContainer.build()
        app.state.container = services
        await services.startup()

        yield

        logger.info("Application shutting down")
        await services.shutdown()

    app = FastAPI(
        title="Blood Match Backend",
        description="Blood donor matching, offers and notification dispatch",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.include_router(health.router)
    app.include_router(match.router)
    app.include_router(offer.router)

    app.add_middleware(RequestContextMiddleware)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log HTTP requests with timing."""
        start_time = time.time()
        response = await call_next(request)
        process_time = (time.time() - start_time) * 1000

        logger.info(
            "HTTP request completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round(process_time, 2),
        )
        return response

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        # malformed input is a client error, never 422/500
        logger.info("Request validation failed", path=request.url.path, errors=len(exc.errors()))
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"detail": jsonable_encoder(exc.errors())},
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
