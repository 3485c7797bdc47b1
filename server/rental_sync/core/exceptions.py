"""Custom exceptions following RFC 9457 Problem Details for HTTP APIs."""

import logging
import uuid
from typing import Any, Dict, Optional

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .clock import utcnow

logger = logging.getLogger(__name__)


PROBLEM_BASE_URI = "https://rental-sync.dev/problems"


class ProblemDetailsException(HTTPException):
    """
    Base exception class following RFC 9457 Problem Details for HTTP APIs.

    https://tools.ietf.org/rfc/rfc9457.txt
    """

    def __init__(
        self,
        status_code: int,
        title: str,
        detail: Optional[str] = None,
        type_uri: Optional[str] = None,
        instance: Optional[str] = None,
        extensions: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        """
        Initialize Problem Details exception.

        Args:
            status_code: HTTP status code
            title: Short, human-readable summary of the problem type
            detail: Human-readable explanation specific to this occurrence
            type_uri: URI reference that identifies the problem type
            instance: URI reference that identifies the specific occurrence
            extensions: Additional problem-specific information
            headers: HTTP headers to include in response
        """
        self.status_code = status_code
        self.title = title
        self.detail = detail
        self.type_uri = type_uri or f"about:blank#{status_code}"
        self.instance = instance
        self.extensions = extensions or {}

        # Create the problem details object
        self.problem_details = {
            "type": self.type_uri,
            "title": self.title,
            "status": self.status_code,
        }

        if self.detail:
            self.problem_details["detail"] = self.detail

        if self.instance:
            self.problem_details["instance"] = self.instance

        # Add extensions
        self.problem_details.update(self.extensions)

        super().__init__(
            status_code=status_code,
            detail=self.problem_details,
            headers=headers
        )

    @property
    def code(self) -> Optional[str]:
        return self.problem_details.get("code")

    @property
    def retryable(self) -> bool:
        return bool(self.problem_details.get("retryable", False))


class AuthenticationError(ProblemDetailsException):
    """Exception for authentication errors."""

    def __init__(
        self,
        detail: str = "Authentication credentials are required",
        instance: Optional[str] = None,
    ):
        super().__init__(
            status_code=401,
            title="Authentication Required",
            detail=detail,
            type_uri=f"{PROBLEM_BASE_URI}/authentication-required",
            instance=instance,
            headers={"WWW-Authenticate": "Bearer"},
        )


class AuthorizationError(ProblemDetailsException):
    """Exception for authorization errors."""

    def __init__(
        self,
        detail: str = "Insufficient permissions to access this resource",
        instance: Optional[str] = None,
    ):
        super().__init__(
            status_code=403,
            title="Access Forbidden",
            detail=detail,
            type_uri=f"{PROBLEM_BASE_URI}/access-forbidden",
            instance=instance,
        )


class NotFoundError(ProblemDetailsException):
    """Exception for resource not found errors."""

    def __init__(
        self,
        resource_type: str = "resource",
        resource_id: Optional[str] = None,
        detail: Optional[str] = None,
        instance: Optional[str] = None,
    ):
        if not detail:
            detail = f"The requested {resource_type}"
            if resource_id:
                detail += f" with ID '{resource_id}'"
            detail += " could not be found"

        extensions = {
            "code": "NOT_FOUND",
            "retryable": False,
            "resource_type": resource_type,
        }
        if resource_id:
            extensions["resource_id"] = resource_id

        super().__init__(
            status_code=404,
            title="Resource Not Found",
            detail=detail,
            type_uri=f"{PROBLEM_BASE_URI}/resource-not-found",
            instance=instance,
            extensions=extensions,
        )


class ConflictError(ProblemDetailsException):
    """Exception for resource conflict errors."""

    def __init__(
        self,
        detail: str = "The request conflicts with the current state of the resource",
        conflicting_resource: Optional[Dict[str, Any]] = None,
        instance: Optional[str] = None,
        title: str = "Resource Conflict",
        code: str = "CONFLICT",
        retryable: bool = False,
        status_code: int = 409,
    ):
        extensions: Dict[str, Any] = {"code": code, "retryable": retryable}
        if conflicting_resource:
            extensions["conflicting_resource"] = conflicting_resource

        super().__init__(
            status_code=status_code,
            title=title,
            detail=detail,
            type_uri=f"{PROBLEM_BASE_URI}/{code.lower().replace('_', '-')}",
            instance=instance,
            extensions=extensions,
        )


# Ledger and reconciliation errors

class BookingConflictError(ConflictError):
    """An overlapping pending or confirmed booking already holds the car."""

    def __init__(self, car_id: str, conflicting_booking_id: Optional[str] = None):
        conflicting = {"car_id": car_id}
        if conflicting_booking_id:
            conflicting["booking_id"] = conflicting_booking_id
        super().__init__(
            detail=f"Car {car_id} is already reserved for an overlapping range",
            conflicting_resource=conflicting,
            title="Booking Conflict",
            code="BOOKING_CONFLICT",
        )


class StaleVersionError(ConflictError):
    """The booking was mutated concurrently; re-read and retry."""

    def __init__(self, booking_id: str, expected_version: int, actual_version: Optional[int] = None):
        super().__init__(
            detail=f"Booking {booking_id} changed since version {expected_version}",
            title="Stale Version",
            code="STALE_VERSION",
            retryable=True,
        )
        self.booking_id = booking_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        self.problem_details["expected_version"] = expected_version
        if actual_version is not None:
            self.problem_details["actual_version"] = actual_version


class IllegalTransitionError(ConflictError):
    """An event does not apply to the booking's current state."""

    def __init__(self, event_type: str, status: str, payment_status: str, reason: str):
        super().__init__(
            detail=f"{event_type} is not applicable to {status}/{payment_status}: {reason}",
            title="Illegal Transition",
            code="ILLEGAL_TRANSITION",
        )
        self.event_type = event_type
        self.status = status
        self.payment_status = payment_status
        self.reason = reason
        self.problem_details.update({
            "event_type": event_type,
            "booking_status": status,
            "payment_status": payment_status,
            "reason": reason,
        })


class InvalidStateError(ConflictError):
    """A business rule forbids the operation in the current state."""

    def __init__(self, detail: str):
        super().__init__(detail=detail, title="Invalid State", code="INVALID_STATE")


class TooLateToCancelError(ConflictError):
    """The trip already started."""

    def __init__(self, booking_id: str, starts_at: str):
        super().__init__(
            detail=f"Booking {booking_id} started at {starts_at} and can no longer be cancelled",
            title="Too Late To Cancel",
            code="TOO_LATE_TO_CANCEL",
            status_code=422,
        )


# Webhook ingestion errors

class InvalidSignatureError(ProblemDetailsException):
    """Webhook signature verification failed; the provider will redeliver."""

    def __init__(self, detail: str = "Webhook signature verification failed"):
        super().__init__(
            status_code=400,
            title="Invalid Signature",
            detail=detail,
            type_uri=f"{PROBLEM_BASE_URI}/invalid-signature",
            extensions={"code": "INVALID_SIGNATURE", "retryable": True},
        )


class MalformedEventError(ProblemDetailsException):
    """Webhook body is signed but cannot be decoded."""

    def __init__(self, detail: str = "Webhook payload could not be decoded"):
        super().__init__(
            status_code=400,
            title="Malformed Event",
            detail=detail,
            type_uri=f"{PROBLEM_BASE_URI}/malformed-event",
            extensions={"code": "MALFORMED_EVENT", "retryable": False},
        )


class UnrecognizedEventTypeError(ProblemDetailsException):
    """Event type outside the handled set; acknowledged and ignored."""

    def __init__(self, event_id: str, event_type: str):
        super().__init__(
            status_code=200,
            title="Unrecognized Event Type",
            detail=f"Event {event_id} has unhandled type {event_type}",
            type_uri=f"{PROBLEM_BASE_URI}/unrecognized-event-type",
            extensions={"code": "UNRECOGNIZED_EVENT_TYPE", "retryable": False},
        )
        self.event_id = event_id
        self.event_type = event_type


class DuplicateEventError(ProblemDetailsException):
    """Event id was already processed; acknowledged as a no-op."""

    def __init__(self, event_id: str, outcome: Optional[str] = None):
        super().__init__(
            status_code=200,
            title="Duplicate Event",
            detail=f"Event {event_id} was already processed",
            type_uri=f"{PROBLEM_BASE_URI}/duplicate-event",
            extensions={"code": "DUPLICATE_EVENT", "retryable": False, "outcome": outcome},
        )
        self.event_id = event_id
        self.outcome = outcome


class EventInFlightError(ConflictError):
    """Another delivery of the same event currently holds the processing claim."""

    def __init__(self, event_id: str):
        super().__init__(
            detail=f"Event {event_id} is being processed by another delivery",
            title="Event In Flight",
            code="EVENT_IN_FLIGHT",
            retryable=True,
        )
        self.event_id = event_id


# Payment provider errors

class PaymentProviderError(ProblemDetailsException):
    """A payment provider request did not succeed."""

    def __init__(
        self,
        detail: str,
        status_code: int = 502,
        code: str = "PROVIDER_ERROR",
        retryable: bool = False,
    ):
        super().__init__(
            status_code=status_code,
            title="Payment Provider Error",
            detail=detail,
            type_uri=f"{PROBLEM_BASE_URI}/{code.lower().replace('_', '-')}",
            extensions={"code": code, "retryable": retryable},
        )


class ProviderRejectedError(PaymentProviderError):
    """The provider answered and refused the request."""

    def __init__(self, detail: str):
        super().__init__(detail=detail, code="PROVIDER_REJECTED")


class ProviderUnavailableError(PaymentProviderError):
    """
    The provider could not be reached or timed out.

    The outcome of a mutating request is unknown when this is raised.
    """

    def __init__(self, detail: str):
        super().__init__(
            detail=detail,
            status_code=503,
            code="PROVIDER_UNAVAILABLE",
            retryable=True,
        )


class InternalServerError(ProblemDetailsException):
    """Exception for internal server errors."""

    def __init__(
        self,
        detail: str = "An unexpected error occurred while processing the request",
        error_id: Optional[str] = None,
        instance: Optional[str] = None,
    ):
        if not error_id:
            error_id = str(uuid.uuid4())

        extensions = {
            "code": "INTERNAL_ERROR",
            "retryable": True,
            "error_id": error_id,
            "timestamp": utcnow().isoformat() + "Z",
        }

        super().__init__(
            status_code=500,
            title="Internal Server Error",
            detail=detail,
            type_uri=f"{PROBLEM_BASE_URI}/internal-server-error",
            instance=instance,
            extensions=extensions,
        )


async def problem_details_handler(request: Request, exc: ProblemDetailsException) -> JSONResponse:
    """
    Exception handler for Problem Details exceptions.

    Args:
        request: FastAPI request object
        exc: Problem Details exception

    Returns:
        JSONResponse: Problem Details formatted response
    """
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.problem_details,
        headers=exc.headers,
        media_type="application/problem+json",
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Generic exception handler that converts unhandled exceptions to Problem Details format.

    Args:
        request: FastAPI request object
        exc: Unhandled exception

    Returns:
        JSONResponse: Problem Details formatted response
    """
    problem = InternalServerError(
        error_id=getattr(request.state, "request_id", None),
        instance=str(request.url),
    )
    logger.error(
        "Unhandled exception",
        exc_info=(type(exc), exc, exc.__traceback__),
        extra={"error_id": problem.problem_details["error_id"], "path": request.url.path},
    )

    return JSONResponse(
        status_code=500,
        content=problem.problem_details,
        media_type="application/problem+json",
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """
    Convert request validation errors to Problem Details with violations.

    Args:
        request: FastAPI request object
        exc: Validation error raised while parsing the request

    Returns:
        JSONResponse: 422 Problem Details response
    """
    violations = [
        {
            "path": ".".join(str(part) for part in error.get("loc", ())),
            "message": error.get("msg", "Invalid value"),
        }
        for error in exc.errors()
    ]

    problem_details = {
        "type": f"{PROBLEM_BASE_URI}/validation-error",
        "title": "Validation Error",
        "status": 422,
        "detail": "The request body or parameters are invalid",
        "instance": str(request.url),
        "code": "VALIDATION_ERROR",
        "retryable": False,
        "violations": violations,
    }

    return JSONResponse(
        status_code=422,
        content=problem_details,
        media_type="application/problem+json",
    )
