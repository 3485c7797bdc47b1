"""Health and readiness schemas."""

from enum import Enum

from pydantic import BaseModel, Field


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    READY = "ready"
    NOT_READY = "not_ready"


class CheckResult(str, Enum):
    """Outcome of one readiness check."""
    OK = "ok"
    DISABLED = "disabled"
    MISSING = "missing"
    STOPPED = "stopped"
    UNAVAILABLE = "unavailable"


PASSING_CHECKS = frozenset({CheckResult.OK, CheckResult.DISABLED})


class HealthResponse(BaseModel):
    status: HealthStatus
    service: str
    version: str
    environment: str


class ReadinessResponse(BaseModel):
    """Readiness of the service to accept webhooks and client actions."""

    status: HealthStatus
    service: str
    checks: dict[str, CheckResult] = Field(default_factory=dict, description="Result per dependency")
