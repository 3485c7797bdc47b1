"""Deposit case service: claims against the held deposit of a completed booking."""

import logging
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.actor import Actor
from ..core.clock import Clock, utcnow
from ..core.config import Settings, settings as default_settings
from ..core.exceptions import AuthorizationError, InvalidStateError, NotFoundError
from ..core.observability import metrics_collector
from ..ledger import BookingStatus
from ..models import (
    OPEN_DEPOSIT_CASE_STATUSES,
    Booking,
    DepositCase,
    DepositCaseSource,
    DepositCaseStatus,
)

logger = logging.getLogger(__name__)

RESOLUTIONS = (DepositCaseStatus.RETAINED, DepositCaseStatus.REVERSED)


async def _find_open_case(
    db: AsyncSession, booking_id: UUID, source: Optional[DepositCaseSource] = None
) -> Optional[DepositCase]:
    stmt = select(DepositCase).where(
        DepositCase.booking_id == booking_id,
        DepositCase.status.in_([s.value for s in OPEN_DEPOSIT_CASE_STATUSES]),
    )
    if source is not None:
        stmt = stmt.where(DepositCase.source == source.value)
    result = await db.execute(stmt.order_by(DepositCase.filed_at))
    return result.scalars().first()


async def has_open_case(db: AsyncSession, booking_id: UUID) -> bool:
    return await _find_open_case(db, booking_id) is not None


async def dispute_recorded(db: AsyncSession, dispute_id: str) -> bool:
    result = await db.execute(
        select(DepositCase.id).where(DepositCase.provider_dispute_id == dispute_id)
    )
    return result.scalar_one_or_none() is not None


async def open_from_dispute(
    db: AsyncSession,
    booking_id: UUID,
    amount: int,
    dispute_id: Optional[str],
    now: datetime,
) -> Optional[DepositCase]:
    """
    Record a provider dispute as a deposit case inside the caller's transaction.

    Does not commit. A dispute is recorded even while a host claim is open;
    returns None only when the same dispute was recorded before.
    """
    if dispute_id and await dispute_recorded(db, dispute_id):
        return None

    open_claim = await _find_open_case(db, booking_id, DepositCaseSource.HOST_CLAIM)
    if open_claim is not None:
        logger.warning(
            "Dispute received while a host claim is open",
            extra={
                "booking_id": str(booking_id),
                "open_case_id": str(open_claim.id),
                "provider_dispute_id": dispute_id,
            }
        )

    case = DepositCase(
        booking_id=booking_id,
        source=DepositCaseSource.PROVIDER_DISPUTE.value,
        status=DepositCaseStatus.CASE_SUBMITTED.value,
        amount_claimed=max(amount, 0),
        reason="Payment disputed at provider",
        provider_dispute_id=dispute_id,
        filed_at=now,
    )
    db.add(case)
    metrics_collector.record_deposit_case(DepositCaseSource.PROVIDER_DISPUTE.value, case.status)
    return case


class DepositCaseManager:
    """Service for the deposit case sub-state-machine."""

    def __init__(
        self,
        db: AsyncSession,
        clock: Clock = utcnow,
        settings: Settings = default_settings,
    ):
        self.db = db
        self.clock = clock
        self.settings = settings

    async def get_case(self, case_id: UUID) -> DepositCase:
        result = await self.db.execute(
            select(DepositCase)
            .where(DepositCase.id == case_id)
            .execution_options(populate_existing=True)
        )
        case = result.scalar_one_or_none()
        if not case:
            raise NotFoundError(resource_type="deposit case", resource_id=str(case_id))
        return case

    async def file_case(self, booking_id: UUID, amount: int, reason: str, actor: Actor) -> DepositCase:
        """
        File a host claim against the deposit of a completed booking.

        The claimed amount is clamped to the booking's deposit.

        Raises:
            NotFoundError: If booking not found
            AuthorizationError: If the actor is not the booking's host
            InvalidStateError: If the booking is not completed, has no deposit,
                the claim window closed or a case is already open
        """
        result = await self.db.execute(select(Booking).where(Booking.id == booking_id))
        booking = result.scalar_one_or_none()
        if not booking:
            raise NotFoundError(resource_type="booking", resource_id=str(booking_id))
        if actor.user_id != booking.host_id:
            raise AuthorizationError("Only the booking's host may file a deposit case")

        if booking.status != BookingStatus.COMPLETED:
            raise InvalidStateError("A deposit case can be filed only after the trip completed")
        if booking.deposit_amount <= 0:
            raise InvalidStateError("This booking has no deposit")

        now = self.clock()
        window_ends_at = booking.completed_at + timedelta(hours=self.settings.deposit_claim_window_hours)
        if now > window_ends_at:
            raise InvalidStateError(
                f"The deposit claim window ended at {window_ends_at.isoformat()}Z"
            )

        if await _find_open_case(self.db, booking_id) is not None:
            raise InvalidStateError("A deposit case is already open for this booking")

        case = DepositCase(
            booking_id=booking_id,
            source=DepositCaseSource.HOST_CLAIM.value,
            status=DepositCaseStatus.CASE_SUBMITTED.value,
            amount_claimed=max(0, min(amount, booking.deposit_amount)),
            reason=reason.strip() or "No reason provided",
            filed_by=actor.user_id,
            filed_at=now,
        )
        self.db.add(case)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise InvalidStateError("A deposit case is already open for this booking")

        metrics_collector.record_deposit_case(case.source, case.status)
        logger.info(
            "Deposit case filed",
            extra={
                "case_id": str(case.id),
                "booking_id": str(booking_id),
                "amount_claimed": case.amount_claimed,
                "requested_amount": amount,
            }
        )
        return case

    async def start_review(self, case_id: UUID, actor: Actor) -> DepositCase:
        """Move a submitted case under review."""
        if not actor.is_operator:
            raise AuthorizationError("Only operators may review deposit cases")
        case = await self.get_case(case_id)
        if case.status == DepositCaseStatus.UNDER_REVIEW:
            return case
        if case.status != DepositCaseStatus.CASE_SUBMITTED:
            raise InvalidStateError(f"A {case.status} case cannot be reviewed")

        case.status = DepositCaseStatus.UNDER_REVIEW.value
        case.reviewed_at = self.clock()
        await self.db.commit()

        metrics_collector.record_deposit_case(case.source, case.status)
        logger.info("Deposit case under review", extra={"case_id": str(case_id), "actor": actor.user_id})
        return case

    async def resolve(
        self,
        case_id: UUID,
        resolution: DepositCaseStatus,
        note: Optional[str],
        actor: Actor,
    ) -> DepositCase:
        """
        Resolve an open case as retained or reversed.

        The booking status is not touched. Resolving a case again with the
        same resolution returns it unchanged.
        """
        if not actor.is_operator:
            raise AuthorizationError("Only operators may resolve deposit cases")
        if resolution not in RESOLUTIONS:
            raise InvalidStateError(f"{resolution} is not a resolution")

        case = await self.get_case(case_id)
        if case.status == resolution:
            return case
        if case.status not in OPEN_DEPOSIT_CASE_STATUSES:
            raise InvalidStateError(f"Case {case_id} is already {case.status}")

        case.status = resolution.value
        case.resolved_at = self.clock()
        case.resolution_note = note
        await self.db.commit()

        metrics_collector.record_deposit_case(case.source, case.status)
        logger.info(
            "Deposit case resolved",
            extra={"case_id": str(case_id), "resolution": resolution.value, "actor": actor.user_id}
        )
        return case
