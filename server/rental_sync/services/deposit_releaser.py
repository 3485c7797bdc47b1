"""Deposit releaser: returns deposits nobody claimed within the claim window."""

import logging
from collections import Counter
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.clock import Clock, utcnow
from ..core.config import Settings, settings as default_settings
from ..core.exceptions import IllegalTransitionError, InvalidStateError, StaleVersionError
from ..core.observability import metrics_collector
from ..ledger import BookingStatus, PaymentStatus
from ..models import Booking, RefundRequest
from .booking_ledger import BookingLedger

logger = logging.getLogger(__name__)

DEPOSIT_RELEASE_REASON = "deposit_release"


class DepositReleaser:
    """
    Periodic job queueing the deposit refund of completed bookings.

    A booking qualifies once its claim window closed with no deposit case
    open. Each booking's release is keyed by reason, so it is queued at most
    once however many runs see it.
    """

    def __init__(
        self,
        db: AsyncSession,
        clock: Clock = utcnow,
        settings: Settings = default_settings,
    ):
        self.db = db
        self.clock = clock
        self.settings = settings
        self.ledger = BookingLedger(db, clock=clock, settings=settings)

    async def run(self, limit: int | None = None) -> dict[str, int]:
        """
        Queue deposit refunds for up to ``limit`` bookings.

        Returns:
            Counts by release reason
        """
        limit = self.settings.completion_batch_limit if limit is None else limit
        window_closed_before = self.clock() - timedelta(hours=self.settings.deposit_claim_window_hours)
        already_released = select(RefundRequest.booking_id).where(
            RefundRequest.reason == DEPOSIT_RELEASE_REASON
        )
        stmt = (
            select(Booking.id)
            .where(
                Booking.status == BookingStatus.COMPLETED.value,
                Booking.payment_status == PaymentStatus.TRANSFERRED.value,
                Booking.deposit_amount > 0,
                Booking.completed_at <= window_closed_before,
                Booking.id.not_in(already_released),
            )
            .order_by(Booking.completed_at)
            .limit(limit)
        )
        result = await self.db.execute(stmt)
        booking_ids = list(result.scalars().all())

        counts: Counter[str] = Counter()
        for booking_id in booking_ids:
            try:
                await self.ledger.release_deposit(booking_id)
            except InvalidStateError:
                reason = "case_open"
            except IllegalTransitionError as e:
                reason = "not_eligible"
                logger.info(
                    "Deposit not released",
                    extra={"booking_id": str(booking_id), "reason": e.reason}
                )
            except StaleVersionError:
                # Picked up again by the next run
                reason = "stale_version"
            except IntegrityError:
                await self.db.rollback()
                reason = "already_released"
            else:
                reason = "released"
            counts[reason] += 1
            metrics_collector.record_deposit_release(reason)

        if booking_ids:
            logger.info("Deposit release run finished", extra={"counts": dict(counts)})
        return dict(counts)
