"""Stale checkout sweep: repairs checkout state the webhook stream failed to deliver."""

import logging
from dataclasses import asdict, dataclass
from datetime import timedelta
from typing import Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.clock import Clock, utcnow
from ..core.config import Settings, settings as default_settings
from ..core.exceptions import IllegalTransitionError, PaymentProviderError, StaleVersionError
from ..core.observability import metrics_collector
from ..ledger import BookingStatus, PaymentStatus
from ..models import Booking, CheckoutSession, CheckoutSessionStatus, WebhookOutcome
from .payment_provider import PaymentProvider, ProviderCheckoutState
from .payment_reconciler import PaymentStateReconciler

logger = logging.getLogger(__name__)


def _never_stop() -> bool:
    return False


@dataclass
class SweepReport:
    """Counts of what one sweep run did."""

    examined: int = 0
    applied: int = 0
    dropped: int = 0
    still_open: int = 0
    failed: int = 0
    abandoned_cancelled: int = 0
    stopped_early: bool = False

    def as_dict(self) -> dict:
        return asdict(self)


class StaleCheckoutSweep:
    """
    Periodic job that re-queries the provider for checkout sessions stuck in
    ``created`` and feeds the answer through the reconciler.

    A second phase cancels pending bookings that never opened a session.
    """

    def __init__(
        self,
        db: AsyncSession,
        provider: PaymentProvider,
        clock: Clock = utcnow,
        settings: Settings = default_settings,
    ):
        self.db = db
        self.provider = provider
        self.clock = clock
        self.settings = settings
        self.reconciler = PaymentStateReconciler(db, provider=provider, clock=clock, settings=settings)

    async def _stale_sessions(self, cutoff, limit: int) -> list[CheckoutSession]:
        stmt = (
            select(CheckoutSession)
            .where(
                CheckoutSession.status == CheckoutSessionStatus.CREATED.value,
                CheckoutSession.created_at <= cutoff,
            )
            .order_by(CheckoutSession.created_at)
            .limit(limit)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def _abandoned_bookings(self, cutoff, limit: int) -> list:
        stmt = (
            select(Booking.id)
            .where(
                Booking.status == BookingStatus.PENDING_PAYMENT.value,
                Booking.payment_status == PaymentStatus.NOT_STARTED.value,
                Booking.created_at <= cutoff,
            )
            .order_by(Booking.created_at)
            .limit(limit)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def _mark_checked(self, session: CheckoutSession) -> None:
        await self.db.execute(
            update(CheckoutSession)
            .where(CheckoutSession.id == session.id)
            .values(last_reconciled_at=self.clock())
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

    async def _close_if_still_created(self, session: CheckoutSession, state: ProviderCheckoutState) -> None:
        """Close a session row the ledger did not close, so it is not queried again."""
        status = (
            CheckoutSessionStatus.COMPLETED if state.status == "complete" else CheckoutSessionStatus.EXPIRED
        )
        now = self.clock()
        await self.db.execute(
            update(CheckoutSession)
            .where(
                CheckoutSession.id == session.id,
                CheckoutSession.status == CheckoutSessionStatus.CREATED.value,
            )
            .values(status=status.value, closed_at=now, last_reconciled_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

    async def run(
        self,
        older_than_ms: Optional[int] = None,
        limit: Optional[int] = None,
        should_stop: Callable[[], bool] = _never_stop,
    ) -> SweepReport:
        """
        Run one sweep.

        Args:
            older_than_ms: Minimum session age; defaults to the configured threshold
            limit: Maximum sessions to examine; defaults to the configured batch limit
            should_stop: Checked before each provider query; the in-flight
                query and its reconciliation always finish

        Returns:
            SweepReport with per-result counts
        """
        older_than_ms = self.settings.stale_checkout_age_ms if older_than_ms is None else older_than_ms
        limit = self.settings.stale_checkout_batch_limit if limit is None else limit
        cutoff = self.clock() - timedelta(milliseconds=older_than_ms)
        report = SweepReport()

        sessions = await self._stale_sessions(cutoff, limit)
        logger.info(
            "Stale checkout sweep started",
            extra={"candidates": len(sessions), "older_than_ms": older_than_ms, "limit": limit}
        )

        for session in sessions:
            if should_stop():
                report.stopped_early = True
                break
            report.examined += 1

            try:
                state = await self.provider.retrieve_checkout_session(session.provider_session_id)
            except PaymentProviderError as e:
                report.failed += 1
                metrics_collector.record_sweep_result("query_failed")
                logger.warning(
                    "Could not query checkout session",
                    extra={
                        "provider_session_id": session.provider_session_id,
                        "booking_id": str(session.booking_id),
                        "error": e.problem_details.get("detail"),
                    }
                )
                continue

            try:
                result = await self.reconciler.reconcile_provider_state(session, state)
            except StaleVersionError:
                report.failed += 1
                metrics_collector.record_sweep_result("stale_version")
                continue

            if result is None:
                report.still_open += 1
                metrics_collector.record_sweep_result("still_open")
                await self._mark_checked(session)
                continue

            if result.outcome == WebhookOutcome.APPLIED:
                report.applied += 1
            else:
                report.dropped += 1
            metrics_collector.record_sweep_result(f"{state.status}_{result.outcome.value}")
            await self._close_if_still_created(session, state)
            logger.info(
                "Reconciled stale checkout session",
                extra={
                    "provider_session_id": session.provider_session_id,
                    "booking_id": str(session.booking_id),
                    "provider_status": state.status,
                    "payment_status": state.payment_status,
                    "outcome": result.outcome.value,
                    "reason": result.reason,
                }
            )

        if not report.stopped_early:
            remaining = max(limit - report.examined, 0)
            if remaining:
                await self._cancel_abandoned(cutoff, remaining, report, should_stop)

        logger.info("Stale checkout sweep finished", extra=report.as_dict())
        return report

    async def _cancel_abandoned(self, cutoff, limit: int, report: SweepReport, should_stop: Callable[[], bool]) -> None:
        for booking_id in await self._abandoned_bookings(cutoff, limit):
            if should_stop():
                report.stopped_early = True
                return
            try:
                await self.reconciler.ledger.expire_abandoned(booking_id)
            except (IllegalTransitionError, StaleVersionError) as e:
                # Checkout started meanwhile
                logger.info(
                    "Skipped abandoned booking",
                    extra={"booking_id": str(booking_id), "reason": type(e).__name__}
                )
                continue
            report.abandoned_cancelled += 1
            metrics_collector.record_sweep_result("abandoned_cancelled")
