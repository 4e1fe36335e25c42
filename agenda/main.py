"""
Agenda Booking API

FastAPI application entry point: WhatsApp webhook and health probes.
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from agenda.api.routes import health, webhook
from agenda.bootstrap import build_services
from agenda.config import settings
from agenda.infra.database import async_session_factory, close_db, init_db
from agenda.infra.redis import RedisClient


def setup_logging() -> None:
    """Configure logging based on environment."""
    log_level = logging.DEBUG if settings.debug else logging.INFO
    log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    logging.basicConfig(
        level=log_level,
        format=log_format,
    )

    # Reduce noise from third-party libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.debug else logging.WARNING
    )


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Builds the service graph on startup and closes it on shutdown.
    """
    # === STARTUP ===
    setup_logging()
    logger.info(f"Starting {settings.app_name} in {settings.app_env} mode")

    health.set_start_time()

    # Initialize database (only in development - use migrations in production)
    if settings.is_development:
        try:
            await init_db()
            logger.info("Database tables initialized")
        except Exception as e:
            logger.warning(f"Database init skipped: {e}")

    redis = await RedisClient.get_client()
    if redis is None:
        logger.warning("Redis unavailable - running in degraded mode")

    services = build_services(async_session_factory, redis_client=redis)
    app.state.session_factory = async_session_factory
    app.state.services = services
    app.state.ingress = services.ingress

    logger.info(f"Application ready at http://{settings.host}:{settings.port}")

    yield

    # === SHUTDOWN ===
    logger.info("Shutting down application...")
    await services.close()
    await RedisClient.close()
    await close_db()
    logger.info("Shutdown complete")


def create_app() -> FastAPI:
    """Build the FastAPI application. Tests set ``app.state`` themselves."""
    application = FastAPI(
        title="Agenda Booking API",
        description="Conversational appointment booking over WhatsApp.",
        version=health.VERSION,
        docs_url="/docs" if settings.is_development else None,
        redoc_url=None,
        openapi_url="/openapi.json" if settings.is_development else None,
        lifespan=lifespan,
    )

    @application.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request,
        exc: RequestValidationError,
    ) -> JSONResponse:
        """Handle Pydantic validation errors."""
        logger.warning(f"Validation error: {exc.errors()}")
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"error": "Validation error", "detail": exc.errors()},
        )

    @application.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle uncaught exceptions."""
        logger.exception(f"Unhandled exception: {exc}")
        detail = str(exc) if settings.is_development else "Internal server error"
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Internal server error", "detail": detail},
        )

    @application.middleware("http")
    async def request_timing_middleware(request: Request, call_next):
        """Log request duration in debug mode."""
        start_time = time.time()
        try:
            return await call_next(request)
        finally:
            if settings.debug:
                duration = time.time() - start_time
                logger.debug(f"{request.method} {request.url.path} completed in {duration:.3f}s")

    application.include_router(health.router)
    application.include_router(webhook.router)
    return application


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "agenda.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.is_development,
        log_level="debug" if settings.debug else "info",
    )
