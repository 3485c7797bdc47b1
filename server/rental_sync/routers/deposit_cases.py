"""Deposit case router for host claims and operator review."""

import logging
from uuid import UUID

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.actor import Actor
from ..core.dependencies import DatabaseSession, RequiredActor
from ..core.exceptions import NotFoundError
from ..models.deposit_case import DepositCaseStatus
from ..schemas.common import PROBLEM_RESPONSES
from ..schemas.deposit_case import (
    DepositCase,
    FileDepositCaseRequest,
    ResolveDepositCaseRequest,
    ReviewDepositCaseRequest,
)
from ..services.deposit_cases import DepositCaseManager
from .bookings import parse_booking_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/deposit-cases", tags=["deposit-cases"], responses=PROBLEM_RESPONSES)


def _parse_case_id(value: str) -> UUID:
    try:
        return UUID(value)
    except ValueError:
        raise NotFoundError(resource_type="deposit case", resource_id=value)


def _convert_case_to_schema(case_model) -> DepositCase:
    """Convert deposit case model to schema."""
    return DepositCase(
        id=str(case_model.id),
        booking_id=str(case_model.booking_id),
        source=case_model.source,
        status=case_model.status,
        amount_claimed=case_model.amount_claimed,
        reason=case_model.reason,
        provider_dispute_id=case_model.provider_dispute_id,
        filed_at=case_model.filed_at,
        reviewed_at=case_model.reviewed_at,
        resolved_at=case_model.resolved_at,
        resolution_note=case_model.resolution_note,
    )


@router.post("/file", response_model=DepositCase, status_code=201)
async def file_deposit_case(
    request: FileDepositCaseRequest,
    db: AsyncSession = DatabaseSession,
    actor: Actor = RequiredActor,
) -> JSONResponse:
    """File a host claim against the deposit of a completed booking."""
    case = await DepositCaseManager(db).file_case(
        booking_id=parse_booking_id(request.booking_id),
        amount=request.amount,
        reason=request.reason,
        actor=actor,
    )
    return JSONResponse(
        status_code=201,
        content=_convert_case_to_schema(case).model_dump(mode="json"),
    )


@router.post("/review", response_model=DepositCase)
async def review_deposit_case(
    request: ReviewDepositCaseRequest,
    db: AsyncSession = DatabaseSession,
    actor: Actor = RequiredActor,
) -> JSONResponse:
    """Take a submitted case under review."""
    case = await DepositCaseManager(db).start_review(_parse_case_id(request.case_id), actor)
    return JSONResponse(
        status_code=200,
        content=_convert_case_to_schema(case).model_dump(mode="json"),
    )


@router.post("/resolve", response_model=DepositCase)
async def resolve_deposit_case(
    request: ResolveDepositCaseRequest,
    db: AsyncSession = DatabaseSession,
    actor: Actor = RequiredActor,
) -> JSONResponse:
    """Resolve an open case as retained or reversed."""
    case = await DepositCaseManager(db).resolve(
        _parse_case_id(request.case_id),
        DepositCaseStatus(request.resolution.value),
        request.note,
        actor,
    )
    return JSONResponse(
        status_code=200,
        content=_convert_case_to_schema(case).model_dump(mode="json"),
    )
