"""Lifecycle completer: completes confirmed bookings whose trip ended."""

import logging
from collections import Counter

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.clock import Clock, utcnow
from ..core.config import Settings, settings as default_settings
from ..core.exceptions import StaleVersionError
from ..core.observability import metrics_collector
from ..ledger import BookingStatus
from ..models import Booking
from .booking_ledger import BookingLedger

logger = logging.getLogger(__name__)


class LifecycleCompleter:
    """Periodic job moving ended trips from ``confirmed`` to ``completed``."""

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
        Complete up to ``limit`` ended bookings.

        Returns:
            Counts by completion reason
        """
        limit = self.settings.completion_batch_limit if limit is None else limit
        stmt = (
            select(Booking.id)
            .where(
                Booking.status == BookingStatus.CONFIRMED.value,
                Booking.ends_at <= self.clock(),
            )
            .order_by(Booking.ends_at)
            .limit(limit)
        )
        result = await self.db.execute(stmt)
        booking_ids = list(result.scalars().all())

        counts: Counter[str] = Counter()
        max_attempts = self.settings.reconcile_max_attempts
        for booking_id in booking_ids:
            for attempt in range(1, max_attempts + 1):
                try:
                    completion = await self.ledger.complete_if_ended(booking_id)
                except StaleVersionError:
                    metrics_collector.record_stale_version_retry("completer")
                    if attempt == max_attempts:
                        counts["stale_version"] += 1
                        logger.warning(
                            "Gave up completing booking after concurrent updates",
                            extra={"booking_id": str(booking_id), "attempts": attempt}
                        )
                    continue
                counts[completion.reason] += 1
                metrics_collector.record_completion(completion.reason)
                break

        if booking_ids:
            logger.info("Lifecycle completion run finished", extra={"counts": dict(counts)})
        return dict(counts)
