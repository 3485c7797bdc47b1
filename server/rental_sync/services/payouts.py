"""Host payouts: release of rental income to hosts and its reversal."""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.clock import Clock, utcnow
from ..core.config import Settings, settings as default_settings
from ..core.exceptions import ProviderRejectedError, ProviderUnavailableError
from ..core.observability import metrics_collector
from ..ledger import BookingStatus, PaymentStatus
from ..models import (
    IN_FLIGHT_PAYOUT_STATUSES,
    Booking,
    DepositCase,
    DepositCaseSource,
    HostAccount,
    HostPayout,
    PayoutStatus,
)
from ..schemas.webhook import AccountObject
from .payment_provider import PaymentProvider, ProviderTransfer

logger = logging.getLogger(__name__)

# A payout left in submitting this long lost its dispatcher mid-call
SUBMITTING_TIMEOUT = timedelta(minutes=10)

# Booking payment states whose captured funds can still fund a payout
PAYABLE_PAYMENT_STATUSES = (PaymentStatus.TRANSFERRED, PaymentStatus.REFUND_PENDING)


def host_payout_amount(amount_total: int, deposit_amount: int, fee_bps: int) -> int:
    """Host share of a booking: the rental amount less the platform fee, in minor units."""
    rental = max(amount_total - deposit_amount, 0)
    return rental - round(rental * fee_bps / 10000)


def transfer_group_for(booking_id: UUID) -> str:
    return f"booking-{booking_id}"


async def flag_payout_for_reversal(db: AsyncSession, booking_id: UUID, reason: str, now: datetime) -> None:
    """
    Stop or claw back the payout of a booking inside the caller's transaction.

    A queued payout is blocked before any money moves, a transferred one is
    queued for reversal and one whose transfer is in flight is marked so the
    dispatcher queues the reversal once the transfer lands. Does not commit.
    """
    blocked = await db.execute(
        update(HostPayout)
        .where(HostPayout.booking_id == booking_id, HostPayout.status == PayoutStatus.QUEUED.value)
        .values(status=PayoutStatus.BLOCKED.value, reversal_reason=reason, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    reversing = await db.execute(
        update(HostPayout)
        .where(HostPayout.booking_id == booking_id, HostPayout.status == PayoutStatus.TRANSFERRED.value)
        .values(status=PayoutStatus.REVERSAL_QUEUED.value, reversal_reason=reason, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    in_flight = await db.execute(
        update(HostPayout)
        .where(
            HostPayout.booking_id == booking_id,
            HostPayout.status.in_([s.value for s in IN_FLIGHT_PAYOUT_STATUSES]),
        )
        .values(reversal_reason=reason, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if blocked.rowcount or reversing.rowcount or in_flight.rowcount:
        logger.warning(
            "Host payout flagged for reversal",
            extra={
                "booking_id": str(booking_id),
                "reason": reason,
                "blocked": blocked.rowcount,
                "reversal_queued": reversing.rowcount,
                "in_flight": in_flight.rowcount,
            }
        )


async def record_account_update(
    db: AsyncSession, account: AccountObject, clock: Clock = utcnow
) -> Optional[HostAccount]:
    """
    Store the payout capability of a host's connected account.

    Accounts are matched by provider id, or by the ``host_id`` metadata the
    onboarding flow sets. Returns None for accounts of no known host.
    """
    result = await db.execute(
        select(HostAccount).where(HostAccount.provider_account_id == account.id)
    )
    host_account = result.scalar_one_or_none()
    if host_account is None and account.host_id:
        result = await db.execute(select(HostAccount).where(HostAccount.host_id == account.host_id))
        host_account = result.scalar_one_or_none()
        if host_account is None:
            host_account = HostAccount(host_id=account.host_id, provider_account_id=account.id)
            db.add(host_account)
    if host_account is None:
        logger.info("Account update for an unknown host", extra={"provider_account_id": account.id})
        return None

    host_account.provider_account_id = account.id
    host_account.details_submitted = account.details_submitted
    host_account.payouts_enabled = account.payouts_enabled
    host_account.updated_at = clock()
    await db.commit()

    logger.info(
        "Host payout account updated",
        extra={
            "host_id": host_account.host_id,
            "provider_account_id": account.id,
            "payouts_enabled": account.payouts_enabled,
        }
    )
    return host_account


@dataclass
class PayoutReport:
    queued: int = 0
    blocked: int = 0
    waiting: int = 0
    transferred: int = 0
    failed: int = 0
    ambiguous: int = 0
    resolved: int = 0
    reversed: int = 0

    def as_dict(self) -> dict:
        return asdict(self)

    def __bool__(self) -> bool:
        return any(self.as_dict().values())


class PayoutDispatcher:
    """
    Periodic job paying hosts for completed trips.

    A completed booking gets exactly one payout row, keyed by booking. Each
    transfer is claimed with a conditional ``queued -> submitting`` update
    and sent once with its idempotency key; a transfer whose outcome is
    unknown is settled by looking it up at the provider. Reversals carry
    their own idempotency key and never exceed the transferred amount.
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

    async def _set_status(self, payout_id, status: PayoutStatus, expected: PayoutStatus, **values) -> bool:
        stmt = (
            update(HostPayout)
            .where(HostPayout.id == payout_id, HostPayout.status == expected.value)
            .values(status=status.value, updated_at=self.clock(), **values)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        await self.db.commit()
        return result.rowcount == 1

    async def run(self, limit: Optional[int] = None) -> PayoutReport:
        limit = self.settings.payout_batch_limit if limit is None else limit
        report = PayoutReport()
        await self._queue_eligible(limit, report)
        await self._resolve_ambiguous(limit, report)
        await self._dispatch_queued(limit, report)
        await self._reverse_queued(limit, report)
        if report:
            logger.info("Payout dispatch run finished", extra=report.as_dict())
        return report

    async def _queue_eligible(self, limit: int, report: PayoutReport) -> None:
        """Create the payout row of every completed booking that has none."""
        result = await self.db.execute(
            select(
                Booking.id,
                Booking.host_id,
                Booking.amount_total,
                Booking.deposit_amount,
                Booking.amount_captured,
                Booking.amount_refunded,
            )
            .outerjoin(HostPayout, HostPayout.booking_id == Booking.id)
            .where(
                HostPayout.id.is_(None),
                Booking.status == BookingStatus.COMPLETED.value,
                Booking.payment_status.in_([s.value for s in PAYABLE_PAYMENT_STATUSES]),
                Booking.amount_total > Booking.deposit_amount,
            )
            .order_by(Booking.completed_at)
            .limit(limit)
        )
        # Plain rows; a rollback below must not expire what is left to queue
        for booking in list(result.all()):
            amount = host_payout_amount(
                booking.amount_total, booking.deposit_amount, self.settings.platform_fee_bps
            )
            if amount <= 0:
                continue

            status, reason = PayoutStatus.QUEUED, None
            if await self._is_disputed(booking.id):
                status, reason = PayoutStatus.BLOCKED, "disputed"
            elif booking.amount_captured - booking.amount_refunded < amount:
                status, reason = PayoutStatus.BLOCKED, "refunded"

            now = self.clock()
            self.db.add(HostPayout(
                booking_id=booking.id,
                host_id=booking.host_id,
                amount=amount,
                status=status.value,
                reversal_reason=reason,
                idempotency_key=f"payout-{booking.id}",
                created_at=now,
                updated_at=now,
            ))
            try:
                await self.db.commit()
            except IntegrityError:
                # Queued by another dispatcher
                await self.db.rollback()
                continue

            if status == PayoutStatus.BLOCKED:
                report.blocked += 1
                metrics_collector.record_payout("blocked")
                logger.warning(
                    "Host payout blocked",
                    extra={"booking_id": str(booking.id), "amount": amount, "reason": reason}
                )
            else:
                report.queued += 1
                metrics_collector.record_payout("queued")

    async def _is_disputed(self, booking_id: UUID) -> bool:
        result = await self.db.execute(
            select(DepositCase.id).where(
                DepositCase.booking_id == booking_id,
                DepositCase.source == DepositCaseSource.PROVIDER_DISPUTE.value,
            )
        )
        return result.first() is not None

    async def _destination_for(self, host_id: str) -> Optional[str]:
        result = await self.db.execute(
            select(HostAccount.provider_account_id).where(
                HostAccount.host_id == host_id,
                HostAccount.payouts_enabled.is_(True),
            )
        )
        return result.scalar_one_or_none()

    async def _charge_for(self, booking_id: UUID) -> Optional[str]:
        result = await self.db.execute(select(Booking.charge_id).where(Booking.id == booking_id))
        return result.scalar_one_or_none()

    async def _mark_transferred(
        self, payout: HostPayout, transfer: ProviderTransfer, expected: PayoutStatus
    ) -> None:
        await self._set_status(
            payout.id, PayoutStatus.TRANSFERRED, expected,
            provider_transfer_id=transfer.id, transferred_at=self.clock(), last_error=None,
        )
        # A refund or dispute arrived while the transfer was in flight
        result = await self.db.execute(
            update(HostPayout)
            .where(
                HostPayout.id == payout.id,
                HostPayout.status == PayoutStatus.TRANSFERRED.value,
                HostPayout.reversal_reason.is_not(None),
            )
            .values(status=PayoutStatus.REVERSAL_QUEUED.value, updated_at=self.clock())
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        if result.rowcount:
            logger.warning(
                "Transferred payout queued for reversal",
                extra={"payout_id": str(payout.id), "booking_id": str(payout.booking_id)}
            )

    async def _dispatch_queued(self, limit: int, report: PayoutReport) -> None:
        result = await self.db.execute(
            select(HostPayout)
            .where(HostPayout.status == PayoutStatus.QUEUED.value)
            .order_by(HostPayout.created_at)
            .limit(limit)
        )
        for payout in list(result.scalars().all()):
            destination = await self._destination_for(payout.host_id)
            if destination is None:
                report.waiting += 1
                logger.info(
                    "Host has no payout-enabled account; payout stays queued",
                    extra={"payout_id": str(payout.id), "host_id": payout.host_id}
                )
                continue

            if not await self._set_status(
                payout.id, PayoutStatus.SUBMITTING, PayoutStatus.QUEUED, destination_account_id=destination
            ):
                # Claimed by another dispatcher or blocked meanwhile
                continue

            try:
                transfer = await self.provider.create_transfer(
                    amount=payout.amount,
                    destination_account_id=destination,
                    idempotency_key=payout.idempotency_key,
                    transfer_group=transfer_group_for(payout.booking_id),
                    metadata={"payout_id": str(payout.id), "booking_id": str(payout.booking_id)},
                    source_charge_id=await self._charge_for(payout.booking_id),
                )
            except ProviderRejectedError as e:
                await self._set_status(
                    payout.id, PayoutStatus.FAILED, PayoutStatus.SUBMITTING,
                    last_error=str(e.problem_details.get("detail")),
                )
                report.failed += 1
                metrics_collector.record_payout("failed")
                logger.error(
                    "Host transfer rejected by provider",
                    extra={
                        "payout_id": str(payout.id),
                        "booking_id": str(payout.booking_id),
                        "amount": payout.amount,
                        "error": e.problem_details.get("detail"),
                    }
                )
                continue
            except ProviderUnavailableError as e:
                await self._set_status(
                    payout.id, PayoutStatus.AMBIGUOUS, PayoutStatus.SUBMITTING,
                    last_error=str(e.problem_details.get("detail")),
                )
                report.ambiguous += 1
                metrics_collector.record_payout("ambiguous")
                logger.warning(
                    "Host transfer outcome unknown; will be resolved by provider lookup",
                    extra={"payout_id": str(payout.id), "booking_id": str(payout.booking_id)}
                )
                continue

            await self._mark_transferred(payout, transfer, PayoutStatus.SUBMITTING)
            report.transferred += 1
            metrics_collector.record_payout("transferred")
            logger.info(
                "Host payout transferred",
                extra={
                    "payout_id": str(payout.id),
                    "booking_id": str(payout.booking_id),
                    "provider_transfer_id": transfer.id,
                    "amount": payout.amount,
                }
            )

    async def _resolve_ambiguous(self, limit: int, report: PayoutReport) -> None:
        abandoned_before = self.clock() - SUBMITTING_TIMEOUT
        await self.db.execute(
            update(HostPayout)
            .where(
                HostPayout.status == PayoutStatus.SUBMITTING.value,
                HostPayout.updated_at < abandoned_before,
            )
            .values(status=PayoutStatus.AMBIGUOUS.value, updated_at=self.clock())
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        result = await self.db.execute(
            select(HostPayout)
            .where(HostPayout.status == PayoutStatus.AMBIGUOUS.value)
            .order_by(HostPayout.updated_at)
            .limit(limit)
        )
        for payout in list(result.scalars().all()):
            try:
                transfer = await self.provider.find_transfer(
                    transfer_group_for(payout.booking_id), str(payout.id)
                )
            except (ProviderRejectedError, ProviderUnavailableError) as e:
                logger.warning(
                    "Transfer lookup failed",
                    extra={"payout_id": str(payout.id), "error": e.problem_details.get("detail")}
                )
                continue

            if transfer is not None:
                await self._mark_transferred(payout, transfer, PayoutStatus.AMBIGUOUS)
                report.resolved += 1
                metrics_collector.record_payout("resolved_transferred")
                continue

            # The provider never received the call; an operator decides on a new payout
            await self._set_status(
                payout.id, PayoutStatus.FAILED, PayoutStatus.AMBIGUOUS,
                last_error="transfer not found at provider after ambiguous submission",
            )
            report.failed += 1
            metrics_collector.record_payout("resolved_missing")
            logger.error(
                "Ambiguous host transfer not found at provider",
                extra={
                    "payout_id": str(payout.id),
                    "booking_id": str(payout.booking_id),
                    "amount": payout.amount,
                }
            )

    async def _reverse_queued(self, limit: int, report: PayoutReport) -> None:
        result = await self.db.execute(
            select(HostPayout)
            .where(HostPayout.status == PayoutStatus.REVERSAL_QUEUED.value)
            .order_by(HostPayout.updated_at)
            .limit(limit)
        )
        for payout in list(result.scalars().all()):
            try:
                reversal = await self.provider.reverse_transfer(
                    transfer_id=payout.provider_transfer_id,
                    amount=payout.amount,
                    idempotency_key=f"payout-reversal-{payout.id}",
                    metadata={
                        "payout_id": str(payout.id),
                        "booking_id": str(payout.booking_id),
                        "reason": payout.reversal_reason or "",
                    },
                )
            except (ProviderRejectedError, ProviderUnavailableError) as e:
                # Stays queued; the next run retries with the same idempotency key
                await self.db.execute(
                    update(HostPayout)
                    .where(
                        HostPayout.id == payout.id,
                        HostPayout.status == PayoutStatus.REVERSAL_QUEUED.value,
                    )
                    .values(last_error=str(e.problem_details.get("detail")), updated_at=self.clock())
                    .execution_options(synchronize_session=False)
                )
                await self.db.commit()
                metrics_collector.record_payout("reversal_failed")
                logger.error(
                    "Host transfer reversal failed",
                    extra={
                        "payout_id": str(payout.id),
                        "booking_id": str(payout.booking_id),
                        "error": e.problem_details.get("detail"),
                    }
                )
                continue

            await self._set_status(
                payout.id, PayoutStatus.REVERSED, PayoutStatus.REVERSAL_QUEUED,
                provider_reversal_id=reversal.id, reversed_at=self.clock(), last_error=None,
            )
            report.reversed += 1
            metrics_collector.record_payout("reversed")
            logger.info(
                "Host payout reversed",
                extra={
                    "payout_id": str(payout.id),
                    "booking_id": str(payout.booking_id),
                    "provider_reversal_id": reversal.id,
                    "reason": payout.reversal_reason,
                }
            )
