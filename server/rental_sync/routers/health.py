"""Liveness, readiness and service information endpoints."""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import settings
from ..core.dependencies import DatabaseSession
from ..core.observability import SERVICE_NAME
from ..schemas.health import PASSING_CHECKS, CheckResult, HealthResponse, HealthStatus, ReadinessResponse
from ..workers.manager import worker_manager

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])

API_VERSION = "1.0.0"


async def _check_database(db: AsyncSession) -> CheckResult:
    try:
        await db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.warning("Database readiness check failed", extra={"error": str(e)})
        return CheckResult.UNAVAILABLE
    return CheckResult.OK


def _check_workers() -> CheckResult:
    if not settings.enable_background_workers:
        return CheckResult.DISABLED
    status = worker_manager.get_worker_status()
    if status and all(status.values()):
        return CheckResult.OK
    logger.warning("Background workers not running", extra={"workers": status})
    return CheckResult.STOPPED


@router.get("/health", response_model=HealthResponse, summary="Liveness Check")
async def health_check() -> HealthResponse:
    """Answer while the process is serving requests."""
    return HealthResponse(
        status=HealthStatus.HEALTHY,
        service=SERVICE_NAME,
        version=API_VERSION,
        environment=settings.environment,
    )


@router.get("/ready", response_model=ReadinessResponse, summary="Readiness Check")
async def readiness_check(db: AsyncSession = DatabaseSession) -> JSONResponse:
    """
    Report whether webhooks can be verified and applied.

    Without a signing secret every delivery would be rejected, so the
    instance is not ready even when the database answers.
    """
    checks = {
        "database": await _check_database(db),
        "webhook_secret": CheckResult.OK if settings.stripe_webhook_secret else CheckResult.MISSING,
        "workers": _check_workers(),
    }
    ready = all(result in PASSING_CHECKS for result in checks.values())
    response = ReadinessResponse(
        status=HealthStatus.READY if ready else HealthStatus.NOT_READY,
        service=SERVICE_NAME,
        checks=checks,
    )
    return JSONResponse(status_code=200 if ready else 503, content=response.model_dump(mode="json"))


@router.get("/info", summary="Service Information")
async def service_info() -> dict:
    return {
        "service": SERVICE_NAME,
        "version": API_VERSION,
        "description": "Booking ledger and payment reconciliation for car rentals",
        "environment": settings.environment,
        "preview_name": settings.preview_name,
        "features": {
            "idempotency_ttl_hours": settings.idempotency_ttl_hours,
            "background_workers": settings.enable_background_workers,
            "tracing": settings.otlp_endpoint is not None,
        },
        "endpoints": {
            "webhooks": "/v1/webhooks/stripe",
            "bookings": "/v1/bookings",
            "deposit_cases": "/v1/deposit-cases",
            "metrics": "/metrics",
            "docs": "/docs" if settings.debug else None,
        },
    }
