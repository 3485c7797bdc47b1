"""Booking router for direct booking actions."""

import json
import logging
from typing import Any, Awaitable, Callable, Optional
from uuid import UUID

from fastapi import APIRouter, Header
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.actor import Actor
from ..core.dependencies import DatabaseSession, Provider, RequiredActor
from ..core.exceptions import AuthorizationError, NotFoundError, ProblemDetailsException
from ..schemas.booking import (
    Booking,
    CancelBookingRequest,
    CheckoutRequest,
    CheckoutSession,
    CreateBookingRequest,
    GetBookingRequest,
)
from ..schemas.common import PROBLEM_RESPONSES, Problem
from ..services.booking_ledger import BookingLedger
from ..services.idempotency_service import IdempotencyService
from ..services.payment_provider import PaymentProvider

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/bookings", tags=["bookings"], responses=PROBLEM_RESPONSES)

IDEMPOTENCY_KEY_HEADER = Header(None, alias="Idempotency-Key", max_length=255)


def parse_booking_id(value: str) -> UUID:
    """Parse a booking id; malformed ids cannot exist."""
    try:
        return UUID(value)
    except ValueError:
        raise NotFoundError(resource_type="booking", resource_id=value)


def _convert_booking_to_schema(booking_model) -> Booking:
    """Convert booking model to schema."""
    return Booking(
        id=str(booking_model.id),
        car_id=booking_model.car_id,
        renter_id=booking_model.renter_id,
        host_id=booking_model.host_id,
        starts_at=booking_model.starts_at,
        ends_at=booking_model.ends_at,
        status=booking_model.status,
        payment_status=booking_model.payment_status,
        amount_total=booking_model.amount_total,
        deposit_amount=booking_model.deposit_amount,
        amount_captured=booking_model.amount_captured,
        amount_refunded=booking_model.amount_refunded,
        checkout_session_id=booking_model.checkout_session_id,
        cancelled_at=booking_model.cancelled_at,
        completed_at=booking_model.completed_at,
        version=booking_model.version,
        created_at=booking_model.created_at,
    )


def _convert_session_to_schema(session_model) -> CheckoutSession:
    """Convert checkout session model to schema."""
    return CheckoutSession(
        booking_id=str(session_model.booking_id),
        provider_session_id=session_model.provider_session_id,
        url=session_model.url,
        status=session_model.status,
        expires_at=session_model.expires_at,
    )


async def _handle_idempotent_operation(
    operation: str,
    idempotency_key: Optional[str],
    actor: Actor,
    request_body: dict[str, Any],
    operation_func: Callable[[], Awaitable[JSONResponse]],
    db: AsyncSession,
) -> JSONResponse:
    """
    Run an operation once per caller and Idempotency-Key.

    Successful responses and non-retryable problems are cached; retryable
    problems are not, so a retry with the same key runs the operation again.
    """
    if not idempotency_key:
        return await operation_func()

    idempotency = IdempotencyService(db)
    scope = {"idempotency_key": idempotency_key, "operation": operation, "actor_id": actor.user_id}

    replay = await idempotency.lookup(request_body=request_body, **scope)
    if replay is not None:
        status_code, body = replay
        media_type = "application/problem+json" if status_code >= 400 else "application/json"
        return JSONResponse(status_code=status_code, content=body, media_type=media_type)

    try:
        result = await operation_func()
    except ProblemDetailsException as e:
        if not e.retryable:
            await idempotency.remember(
                request_body=request_body,
                status_code=e.status_code,
                response_body=e.problem_details,
                **scope,
            )
        raise

    await idempotency.remember(
        request_body=request_body,
        status_code=result.status_code,
        response_body=json.loads(result.body),
        **scope,
    )
    return result


@router.post("/create", response_model=Booking, status_code=201)
async def create_booking(
    request: CreateBookingRequest,
    db: AsyncSession = DatabaseSession,
    actor: Actor = RequiredActor,
    idempotency_key: Optional[str] = IDEMPOTENCY_KEY_HEADER,
) -> JSONResponse:
    """
    Reserve a car for a date range, pending payment.

    Repeating the request with the same Idempotency-Key returns the first response.
    """
    ledger = BookingLedger(db)

    async def operation() -> JSONResponse:
        booking = await ledger.create_pending_booking(
            car_id=request.car_id,
            renter_id=actor.user_id,
            host_id=request.host_id,
            starts_at=request.starts_at,
            ends_at=request.ends_at,
            amount_total=request.amount_total,
            deposit_amount=request.deposit_amount,
        )
        return JSONResponse(
            status_code=201,
            content=_convert_booking_to_schema(booking).model_dump(mode="json"),
        )

    return await _handle_idempotent_operation(
        operation="booking.create",
        idempotency_key=idempotency_key,
        actor=actor,
        request_body=request.model_dump(mode="json"),
        operation_func=operation,
        db=db,
    )


@router.post("/checkout", response_model=CheckoutSession)
async def open_checkout(
    request: CheckoutRequest,
    db: AsyncSession = DatabaseSession,
    actor: Actor = RequiredActor,
    provider: PaymentProvider = Provider,
) -> JSONResponse:
    """
    Open a checkout session for a pending booking.

    Naturally idempotent: an unexpired open session is returned as is.
    """
    booking_id = parse_booking_id(request.booking_id)
    ledger = BookingLedger(db, provider=provider)

    booking = await ledger.get_booking(booking_id)
    if actor.user_id != booking.renter_id:
        raise AuthorizationError("Only the renter may pay for this booking")

    session = await ledger.open_checkout_session(booking_id)
    return JSONResponse(
        status_code=200,
        content=_convert_session_to_schema(session).model_dump(mode="json"),
    )


@router.post(
    "/cancel",
    response_model=Booking,
    responses={422: {"model": Problem, "description": "The trip already started"}},
)
async def cancel_booking(
    request: CancelBookingRequest,
    db: AsyncSession = DatabaseSession,
    actor: Actor = RequiredActor,
    provider: PaymentProvider = Provider,
    idempotency_key: Optional[str] = IDEMPOTENCY_KEY_HEADER,
) -> JSONResponse:
    """
    Cancel a reservation.

    Cancelling an already cancelled booking returns it unchanged.
    """
    booking_id = parse_booking_id(request.booking_id)
    ledger = BookingLedger(db, provider=provider)

    async def operation() -> JSONResponse:
        booking = await ledger.cancel_reservation(booking_id, actor)
        logger.info(
            "Booking cancelled",
            extra={
                "booking_id": str(booking.id),
                "actor": actor.user_id,
                "payment_status": booking.payment_status,
            }
        )
        return JSONResponse(
            status_code=200,
            content=_convert_booking_to_schema(booking).model_dump(mode="json"),
        )

    return await _handle_idempotent_operation(
        operation="booking.cancel",
        idempotency_key=idempotency_key,
        actor=actor,
        request_body=request.model_dump(mode="json"),
        operation_func=operation,
        db=db,
    )


@router.post("/get", response_model=Booking)
async def get_booking(
    request: GetBookingRequest,
    db: AsyncSession = DatabaseSession,
    actor: Actor = RequiredActor,
) -> JSONResponse:
    """Retrieve a booking visible to its renter, its host or an operator."""
    booking_id = parse_booking_id(request.booking_id)
    booking = await BookingLedger(db).get_booking(booking_id)
    if actor.user_id not in (booking.renter_id, booking.host_id) and not actor.is_operator:
        # Do not reveal bookings of other parties
        raise NotFoundError(resource_type="booking", resource_id=request.booking_id)

    return JSONResponse(
        status_code=200,
        content=_convert_booking_to_schema(booking).model_dump(mode="json"),
    )
