"""FastAPI application for the rental booking ledger."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from .core.config import settings
from .core.database import close_db, engine, init_db
from .core.exceptions import (
    ProblemDetailsException,
    generic_exception_handler,
    problem_details_handler,
    validation_exception_handler,
)
from .core.middleware import IDEMPOTENCY_KEY_HEADER, REQUEST_ID_HEADER, setup_middleware
from .core.observability import (
    SERVICE_NAME,
    instrument_fastapi,
    instrument_sqlalchemy,
    setup_metrics,
    setup_structured_logging,
    setup_tracing,
)
from .routers import bookings, deposit_cases, health, metrics, webhooks
from .workers.manager import worker_manager

setup_structured_logging()

# Plain stdlib loggers share the level of the structured ones
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)

logger = logging.getLogger(__name__)


def register_exception_handlers(app: FastAPI) -> None:
    """Answer every failure with an RFC 9457 problem details body."""
    app.add_exception_handler(ProblemDetailsException, problem_details_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)


def include_routers(app: FastAPI) -> None:
    """Mount the provider webhook, the client API and the operational endpoints."""
    app.include_router(health.router)
    app.include_router(webhooks.router)
    app.include_router(bookings.router)
    app.include_router(deposit_cases.router)
    app.include_router(metrics.router)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Start observability, the schema and the background workers; stop them in reverse.

    Workers get ``worker_shutdown_grace_seconds`` to finish their running
    iteration before the database engine is disposed.
    """
    logger.info(
        "Starting rental sync API",
        extra={"environment": settings.environment, "preview_name": settings.preview_name},
    )

    setup_tracing(SERVICE_NAME)
    setup_metrics(SERVICE_NAME)
    instrument_sqlalchemy(engine)

    # Production schema is owned by the Alembic migrations
    if not settings.is_production:
        await init_db()
        logger.info("Database schema ensured")

    if settings.enable_background_workers:
        await worker_manager.start_all()
    else:
        logger.info("Background workers disabled")

    yield

    logger.info("Shutting down rental sync API")
    try:
        await worker_manager.stop_all()
    finally:
        await close_db()
    logger.info("Shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Rental Sync API",
        description="Booking ledger and payment reconciliation for peer-to-peer car rentals",
        version="1.0.0",
        debug=settings.debug,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )

    # The webhook endpoint is server to server; CORS only concerns the client API
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", IDEMPOTENCY_KEY_HEADER, REQUEST_ID_HEADER, "traceparent"],
        expose_headers=[REQUEST_ID_HEADER, "traceparent", "tracestate"],
    )
    setup_middleware(app)
    instrument_fastapi(app)

    register_exception_handlers(app)
    include_routers(app)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "rental_sync.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
