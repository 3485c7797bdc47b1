"""Refund dispatcher: issues queued refunds at the provider at most once."""

import logging
from dataclasses import asdict, dataclass
from datetime import timedelta
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.clock import Clock, utcnow
from ..core.config import Settings, settings as default_settings
from ..core.exceptions import ProviderRejectedError, ProviderUnavailableError
from ..core.observability import metrics_collector
from ..models import Booking, RefundRequest, RefundStatus
from .payment_provider import PaymentProvider

logger = logging.getLogger(__name__)

# A request left in submitting this long lost its dispatcher mid-call
SUBMITTING_TIMEOUT = timedelta(minutes=10)


@dataclass
class RefundReport:
    submitted: int = 0
    failed: int = 0
    ambiguous: int = 0
    resolved: int = 0

    def as_dict(self) -> dict:
        return asdict(self)


class RefundDispatcher:
    """
    Periodic job dispatching queued refund requests.

    A request is claimed with a conditional ``queued -> submitting`` update
    and sent once with its idempotency key. When the provider call times
    out the request becomes ``ambiguous`` and is only ever settled by
    looking the refund up at the provider.
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

    async def _set_status(self, request_id, status: RefundStatus, expected: RefundStatus, **values) -> bool:
        stmt = (
            update(RefundRequest)
            .where(RefundRequest.id == request_id, RefundRequest.status == expected.value)
            .values(status=status.value, updated_at=self.clock(), **values)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        await self.db.commit()
        return result.rowcount == 1

    async def _payment_intent_for(self, request: RefundRequest) -> Optional[str]:
        result = await self.db.execute(
            select(Booking.payment_intent_id).where(Booking.id == request.booking_id)
        )
        return result.scalar_one_or_none()

    async def run(self, limit: Optional[int] = None) -> RefundReport:
        limit = self.settings.refund_batch_limit if limit is None else limit
        report = RefundReport()
        await self._resolve_ambiguous(limit, report)
        await self._dispatch_queued(limit, report)
        if report.submitted or report.failed or report.ambiguous or report.resolved:
            logger.info("Refund dispatch run finished", extra=report.as_dict())
        return report

    async def _dispatch_queued(self, limit: int, report: RefundReport) -> None:
        result = await self.db.execute(
            select(RefundRequest)
            .where(RefundRequest.status == RefundStatus.QUEUED.value)
            .order_by(RefundRequest.created_at)
            .limit(limit)
        )
        for request in list(result.scalars().all()):
            if not await self._set_status(request.id, RefundStatus.SUBMITTING, RefundStatus.QUEUED):
                # Claimed by another dispatcher
                continue

            payment_intent_id = await self._payment_intent_for(request)
            if not payment_intent_id:
                await self._set_status(
                    request.id, RefundStatus.FAILED, RefundStatus.SUBMITTING,
                    last_error="booking has no payment intent to refund",
                )
                report.failed += 1
                metrics_collector.record_refund("failed")
                continue

            try:
                refund = await self.provider.create_refund(
                    payment_intent_id=payment_intent_id,
                    amount=request.amount,
                    idempotency_key=request.idempotency_key,
                    metadata={"refund_request_id": str(request.id), "booking_id": str(request.booking_id)},
                )
            except ProviderRejectedError as e:
                await self._set_status(
                    request.id, RefundStatus.FAILED, RefundStatus.SUBMITTING,
                    last_error=str(e.problem_details.get("detail")),
                )
                report.failed += 1
                metrics_collector.record_refund("failed")
                logger.error(
                    "Refund rejected by provider",
                    extra={
                        "refund_request_id": str(request.id),
                        "booking_id": str(request.booking_id),
                        "amount": request.amount,
                        "error": e.problem_details.get("detail"),
                    }
                )
                continue
            except ProviderUnavailableError as e:
                await self._set_status(
                    request.id, RefundStatus.AMBIGUOUS, RefundStatus.SUBMITTING,
                    last_error=str(e.problem_details.get("detail")),
                )
                report.ambiguous += 1
                metrics_collector.record_refund("ambiguous")
                logger.warning(
                    "Refund outcome unknown; will be resolved by provider lookup",
                    extra={"refund_request_id": str(request.id), "booking_id": str(request.booking_id)}
                )
                continue

            await self._set_status(
                request.id, RefundStatus.SUBMITTED, RefundStatus.SUBMITTING,
                provider_refund_id=refund.id, last_error=None,
            )
            report.submitted += 1
            metrics_collector.record_refund("submitted")
            logger.info(
                "Refund submitted",
                extra={
                    "refund_request_id": str(request.id),
                    "booking_id": str(request.booking_id),
                    "provider_refund_id": refund.id,
                    "amount": request.amount,
                }
            )

    async def _resolve_ambiguous(self, limit: int, report: RefundReport) -> None:
        abandoned_before = self.clock() - SUBMITTING_TIMEOUT
        await self.db.execute(
            update(RefundRequest)
            .where(
                RefundRequest.status == RefundStatus.SUBMITTING.value,
                RefundRequest.updated_at < abandoned_before,
            )
            .values(status=RefundStatus.AMBIGUOUS.value, updated_at=self.clock())
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        result = await self.db.execute(
            select(RefundRequest)
            .where(RefundRequest.status == RefundStatus.AMBIGUOUS.value)
            .order_by(RefundRequest.updated_at)
            .limit(limit)
        )
        for request in list(result.scalars().all()):
            payment_intent_id = await self._payment_intent_for(request)
            if not payment_intent_id:
                continue
            try:
                refund = await self.provider.find_refund(payment_intent_id, str(request.id))
            except (ProviderRejectedError, ProviderUnavailableError) as e:
                logger.warning(
                    "Refund lookup failed",
                    extra={"refund_request_id": str(request.id), "error": e.problem_details.get("detail")}
                )
                continue

            if refund is not None:
                await self._set_status(
                    request.id, RefundStatus.SUBMITTED, RefundStatus.AMBIGUOUS,
                    provider_refund_id=refund.id, last_error=None,
                )
                report.resolved += 1
                metrics_collector.record_refund("resolved_submitted")
                continue

            # The provider never received the call; an operator decides on a new request
            await self._set_status(
                request.id, RefundStatus.FAILED, RefundStatus.AMBIGUOUS,
                last_error="refund not found at provider after ambiguous submission",
            )
            report.failed += 1
            metrics_collector.record_refund("resolved_missing")
            logger.error(
                "Ambiguous refund not found at provider",
                extra={
                    "refund_request_id": str(request.id),
                    "booking_id": str(request.booking_id),
                    "amount": request.amount,
                }
            )
