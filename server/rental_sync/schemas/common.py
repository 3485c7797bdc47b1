"""Problem details schemas shared by the routers."""

from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class Violation(BaseModel):
    """One invalid field of a rejected request."""

    path: str = Field(..., description="Dotted path to the invalid field")
    message: str


class Problem(BaseModel):
    """
    RFC 9457 problem details body returned on every failure.

    ``code`` and ``retryable`` are always present; other members depend on
    the problem type.
    """

    model_config = ConfigDict(extra="allow")

    type: str = Field(..., description="Problem type URI")
    title: str
    status: int
    detail: Optional[str] = None
    instance: Optional[str] = None
    code: str = Field(..., examples=["BOOKING_CONFLICT"])
    retryable: bool = Field(..., description="Whether repeating the same request may succeed")
    conflicting_resource: Optional[dict[str, Any]] = Field(
        None, description="Booking holding the requested date range"
    )
    violations: Optional[List[Violation]] = None


# Problem responses shared by the direct action routers
PROBLEM_RESPONSES = {
    401: {"model": Problem, "description": "Missing or invalid bearer token"},
    403: {"model": Problem, "description": "Caller may not act on this resource"},
    404: {"model": Problem, "description": "Booking or deposit case not found"},
    409: {"model": Problem, "description": "Conflict with the current state; see `retryable`"},
    422: {"model": Problem, "description": "Invalid request or reused Idempotency-Key"},
}
