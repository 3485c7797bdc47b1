"""Booking ledger service: persists ledger transitions with optimistic concurrency."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

from sqlalchemy import select, text, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.clock import Clock, utcnow
from ..core.config import Settings, settings as default_settings
from ..core.actor import Actor
from ..core.exceptions import (
    AuthorizationError,
    BookingConflictError,
    IllegalTransitionError,
    InvalidStateError,
    NotFoundError,
    PaymentProviderError,
    StaleVersionError,
)
from ..core.observability import metrics_collector
from ..ledger import (
    ACTIVE_STATUSES,
    BookingStatus,
    CloseSession,
    LedgerEventType,
    LedgerState,
    OpenDepositCase,
    PaymentEvent,
    PaymentStatus,
    QueueRefund,
    ReverseHostPayout,
    Transition,
    apply_payment_event as compute_payment_transition,
    cancel_reservation as compute_cancellation,
    complete_trip,
    expire_abandoned as compute_abandonment,
    open_checkout,
    release_deposit as compute_deposit_release,
)
from ..models import Booking, CheckoutSession, CheckoutSessionStatus, RefundRequest
from .deposit_cases import dispute_recorded, has_open_case, open_from_dispute
from .payment_provider import PaymentProvider
from .payouts import flag_payout_for_reversal

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompletionResult:
    """Outcome of ``complete_if_ended``."""

    reason: str  # not_found, trip_not_ended, already_completed, not_eligible, completed
    booking: Optional[Booking] = None

    @property
    def completed(self) -> bool:
        return self.reason == "completed"


def to_ledger_state(booking: Booking) -> LedgerState:
    """Snapshot the state machine fields of a booking row."""
    return LedgerState(
        status=BookingStatus(booking.status),
        payment_status=PaymentStatus(booking.payment_status),
        starts_at=booking.starts_at,
        ends_at=booking.ends_at,
        amount_total=booking.amount_total,
        amount_captured=booking.amount_captured,
        amount_refunded=booking.amount_refunded,
        active_session_id=booking.checkout_session_id,
        payment_intent_id=booking.payment_intent_id,
        charge_id=booking.charge_id,
        completed_at=booking.completed_at,
    )


def _state_values(state: LedgerState) -> dict:
    return {
        "status": state.status.value,
        "payment_status": state.payment_status.value,
        "amount_captured": state.amount_captured,
        "amount_refunded": state.amount_refunded,
        "checkout_session_id": state.active_session_id,
        "payment_intent_id": state.payment_intent_id,
        "charge_id": state.charge_id,
        "completed_at": state.completed_at,
    }


class BookingLedger:
    """
    Service owning every write to a booking.

    Each mutation reads the booking, computes a pure transition and writes it
    with ``UPDATE ... WHERE id = :id AND version = :expected``. Side records
    produced by the transition (closed sessions, refund requests, deposit
    cases) are written in the same transaction.
    """

    def __init__(
        self,
        db: AsyncSession,
        provider: Optional[PaymentProvider] = None,
        clock: Clock = utcnow,
        settings: Settings = default_settings,
    ):
        self.db = db
        self.provider = provider
        self.clock = clock
        self.settings = settings

    async def find_booking(self, booking_id: UUID) -> Optional[Booking]:
        stmt = (
            select(Booking)
            .where(Booking.id == booking_id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_booking(self, booking_id: UUID) -> Booking:
        """
        Get a booking by ID.

        Raises:
            NotFoundError: If booking not found
        """
        booking = await self.find_booking(booking_id)
        if not booking:
            raise NotFoundError(resource_type="booking", resource_id=str(booking_id))
        return booking

    async def get_open_session(self, booking_id: UUID) -> Optional[CheckoutSession]:
        stmt = (
            select(CheckoutSession)
            .where(
                CheckoutSession.booking_id == booking_id,
                CheckoutSession.status == CheckoutSessionStatus.CREATED.value,
            )
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def _current_version(self, booking_id: UUID) -> Optional[int]:
        result = await self.db.execute(select(Booking.version).where(Booking.id == booking_id))
        return result.scalar_one_or_none()

    async def _write(
        self,
        booking_id: UUID,
        expected_version: int,
        transition: Transition,
        extra_values: Optional[dict] = None,
        new_session: Optional[CheckoutSession] = None,
    ) -> Booking:
        """Write a transition and its side records, then commit."""
        now = self.clock()
        values = _state_values(transition.after)
        values.update(extra_values or {})
        values["version"] = expected_version + 1
        values["updated_at"] = now

        stmt = (
            update(Booking)
            .where(Booking.id == booking_id, Booking.version == expected_version)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        if result.rowcount == 0:
            await self.db.rollback()
            actual = await self._current_version(booking_id)
            logger.info(
                "Booking version moved during write",
                extra={
                    "booking_id": str(booking_id),
                    "expected_version": expected_version,
                    "actual_version": actual,
                    "event_type": transition.event_type.value,
                }
            )
            raise StaleVersionError(str(booking_id), expected_version, actual)

        for effect in transition.effects:
            if isinstance(effect, CloseSession):
                await self._close_session(transition.before.active_session_id, effect, now)
            elif isinstance(effect, QueueRefund):
                if effect.once_per_booking:
                    idempotency_key = f"refund-{booking_id}-{effect.reason}"
                else:
                    idempotency_key = f"refund-{booking_id}-v{expected_version + 1}"
                self.db.add(RefundRequest(
                    booking_id=booking_id,
                    amount=effect.amount,
                    reason=effect.reason,
                    idempotency_key=idempotency_key,
                    created_at=now,
                    updated_at=now,
                ))
            elif isinstance(effect, OpenDepositCase):
                await open_from_dispute(self.db, booking_id, effect.amount, effect.dispute_id, now)
            elif isinstance(effect, ReverseHostPayout):
                await flag_payout_for_reversal(self.db, booking_id, effect.reason, now)

        if new_session is not None:
            self.db.add(new_session)

        await self.db.commit()

        after = transition.after
        metrics_collector.record_transition(
            transition.event_type.value, after.status.value, after.payment_status.value
        )
        logger.info(
            "Booking transition applied",
            extra={
                "booking_id": str(booking_id),
                "event_type": transition.event_type.value,
                "from_status": transition.before.status.value,
                "from_payment_status": transition.before.payment_status.value,
                "status": after.status.value,
                "payment_status": after.payment_status.value,
                "version": expected_version + 1,
                "effects": [type(effect).__name__ for effect in transition.effects],
            }
        )

        for effect in transition.effects_of(CloseSession):
            if effect.expire_at_provider and transition.before.active_session_id:
                await self._expire_at_provider(transition.before.active_session_id)

        return await self.get_booking(booking_id)

    async def _close_session(
        self, provider_session_id: Optional[str], effect: CloseSession, now: datetime
    ) -> None:
        if not provider_session_id:
            return
        stmt = (
            update(CheckoutSession)
            .where(
                CheckoutSession.provider_session_id == provider_session_id,
                CheckoutSession.status == CheckoutSessionStatus.CREATED.value,
            )
            .values(status=effect.outcome.value, closed_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.db.execute(stmt)

    async def _expire_at_provider(self, provider_session_id: str) -> None:
        """Expire a superseded or abandoned session so it can no longer be paid."""
        if self.provider is None:
            return
        try:
            await self.provider.expire_checkout_session(provider_session_id)
        except PaymentProviderError as e:
            # Sessions also lapse at the provider; a late payment is refunded
            logger.warning(
                "Could not expire checkout session at provider",
                extra={
                    "provider_session_id": provider_session_id,
                    "error": e.problem_details.get("detail"),
                }
            )

    async def create_pending_booking(
        self,
        car_id: str,
        renter_id: str,
        host_id: str,
        starts_at: datetime,
        ends_at: datetime,
        amount_total: int,
        deposit_amount: int = 0,
    ) -> Booking:
        """
        Reserve a car for a date range, pending payment.

        Args:
            car_id: Car being reserved
            renter_id: Renter making the reservation
            host_id: Host owning the car
            starts_at: Start of the range (naive UTC)
            ends_at: End of the range (naive UTC)
            amount_total: Amount to charge, minor units
            deposit_amount: Security deposit included in the amount, minor units

        Returns:
            Created booking in pending_payment/not_started

        Raises:
            InvalidStateError: If the range or amounts are invalid
            BookingConflictError: If an active booking overlaps the range
        """
        if starts_at >= ends_at:
            raise InvalidStateError("Booking start must precede its end")
        if amount_total < 0 or deposit_amount < 0 or deposit_amount > amount_total:
            raise InvalidStateError("Deposit must be between zero and the booking amount")

        if self.db.bind.dialect.name == "postgresql":
            # Serialize reservations per car; the exclusion constraint backs this up
            await self.db.execute(
                text("SELECT pg_advisory_xact_lock(hashtext(:car_id))"),
                {"car_id": car_id}
            )

        stmt = (
            select(Booking.id)
            .where(
                Booking.car_id == car_id,
                Booking.status.in_([s.value for s in ACTIVE_STATUSES]),
                Booking.starts_at < ends_at,
                Booking.ends_at > starts_at,
            )
            .limit(1)
        )
        result = await self.db.execute(stmt)
        conflicting_id = result.scalar_one_or_none()
        if conflicting_id is not None:
            await self.db.rollback()
            logger.warning(
                "Booking creation failed - overlapping reservation",
                extra={
                    "car_id": car_id,
                    "conflicting_booking_id": str(conflicting_id),
                    "starts_at": starts_at.isoformat(),
                    "ends_at": ends_at.isoformat(),
                }
            )
            raise BookingConflictError(car_id, str(conflicting_id))

        now = self.clock()
        booking = Booking(
            car_id=car_id,
            renter_id=renter_id,
            host_id=host_id,
            starts_at=starts_at,
            ends_at=ends_at,
            status=BookingStatus.PENDING_PAYMENT.value,
            payment_status=PaymentStatus.NOT_STARTED.value,
            amount_total=amount_total,
            deposit_amount=deposit_amount,
            amount_captured=0,
            amount_refunded=0,
            version=1,
            created_at=now,
            updated_at=now,
        )
        self.db.add(booking)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise BookingConflictError(car_id)

        logger.info(
            "Pending booking created",
            extra={
                "booking_id": str(booking.id),
                "car_id": car_id,
                "renter_id": renter_id,
                "amount_total": amount_total,
                "deposit_amount": deposit_amount,
            }
        )
        return booking

    async def open_checkout_session(self, booking_id: UUID) -> CheckoutSession:
        """
        Open a provider checkout session for a pending booking.

        Returns the open session when it has not expired yet, so a double
        submit yields the same session.

        Raises:
            NotFoundError: If booking not found
            InvalidStateError: If the booking is not awaiting payment
            StaleVersionError: If the booking changed concurrently
        """
        booking = await self.get_booking(booking_id)
        if booking.status != BookingStatus.PENDING_PAYMENT:
            raise InvalidStateError(
                f"Checkout requires a pending_payment booking, not {booking.status}"
            )

        now = self.clock()
        existing = await self.get_open_session(booking_id)
        if (
            existing is not None
            and existing.expires_at > now
            and existing.provider_session_id == booking.checkout_session_id
        ):
            logger.info(
                "Returning open checkout session",
                extra={"booking_id": str(booking_id), "provider_session_id": existing.provider_session_id}
            )
            return existing

        if booking.payment_status == PaymentStatus.METHOD_COLLECTION_PENDING:
            raise InvalidStateError("A payment is already being processed for this booking")

        if self.provider is None:
            raise InvalidStateError("No payment provider is configured")

        if existing is not None:
            still_open = await self.provider.expire_checkout_session(existing.provider_session_id)
            if not still_open:
                provider_state = await self.provider.retrieve_checkout_session(existing.provider_session_id)
                if provider_state.status == "complete":
                    raise InvalidStateError(
                        "The previous checkout session was completed; awaiting payment confirmation"
                    )

        expires_at = now + timedelta(seconds=self.settings.checkout_session_ttl_seconds)
        provider_session = await self.provider.create_checkout_session(
            booking_id=str(booking.id),
            amount=booking.amount_total,
            description=f"Car rental {booking.starts_at:%Y-%m-%d} to {booking.ends_at:%Y-%m-%d}",
            expires_at=expires_at,
        )

        transition = open_checkout(to_ledger_state(booking), provider_session.id)
        session = CheckoutSession(
            booking_id=booking.id,
            provider_session_id=provider_session.id,
            provider_payment_intent_id=provider_session.payment_intent_id,
            url=provider_session.url,
            status=CheckoutSessionStatus.CREATED.value,
            expires_at=provider_session.expires_at,
            created_at=now,
        )
        try:
            await self._write(booking.id, booking.version, transition, new_session=session)
        except StaleVersionError:
            await self._expire_at_provider(provider_session.id)
            raise

        logger.info(
            "Checkout session opened",
            extra={
                "booking_id": str(booking.id),
                "provider_session_id": provider_session.id,
                "superseded_session_id": existing.provider_session_id if existing else None,
                "expires_at": provider_session.expires_at.isoformat(),
            }
        )
        return session

    async def apply_payment_event(
        self, booking_id: UUID, event: PaymentEvent, expected_version: int
    ) -> Transition:
        """
        Apply a provider payment event to a booking.

        Raises:
            NotFoundError: If booking not found
            StaleVersionError: If the booking version moved
            IllegalTransitionError: If the event does not apply
        """
        booking = await self.get_booking(booking_id)
        if booking.version != expected_version:
            raise StaleVersionError(str(booking_id), expected_version, booking.version)
        state = to_ledger_state(booking)
        if (
            event.type == LedgerEventType.DISPUTE_CREATED
            and event.dispute_id
            and await dispute_recorded(self.db, event.dispute_id)
        ):
            raise IllegalTransitionError(
                event_type=event.type.value,
                status=state.status.value,
                payment_status=state.payment_status.value,
                reason="dispute already recorded",
            )
        transition = compute_payment_transition(state, event)
        await self._write(booking_id, expected_version, transition)
        return transition

    async def cancel_reservation(self, booking_id: UUID, actor: Actor) -> Booking:
        """
        Cancel a reservation on behalf of its renter or host.

        Cancelling an already cancelled booking returns it unchanged.

        Raises:
            NotFoundError: If booking not found
            AuthorizationError: If the actor is not a party to the booking
            TooLateToCancelError: If the trip already started
            InvalidStateError: If the booking completed or failed
            StaleVersionError: If the booking changed concurrently
        """
        booking = await self.get_booking(booking_id)
        if actor.user_id not in (booking.renter_id, booking.host_id) and not actor.is_operator:
            raise AuthorizationError("Only the renter or host may cancel this booking")

        if booking.status == BookingStatus.CANCELLED:
            logger.info(
                "Booking already cancelled - returning existing booking",
                extra={"booking_id": str(booking_id), "actor": actor.user_id}
            )
            return booking

        now = self.clock()
        transition = compute_cancellation(to_ledger_state(booking), now, str(booking_id))
        return await self._write(
            booking.id,
            booking.version,
            transition,
            extra_values={"cancelled_at": now, "cancelled_by": actor.user_id},
        )

    async def complete_if_ended(self, booking_id: UUID) -> CompletionResult:
        """
        Complete a confirmed booking whose trip ended.

        Idempotent: a completed booking reports ``already_completed``.

        Raises:
            StaleVersionError: If the booking changed concurrently
        """
        booking = await self.find_booking(booking_id)
        if booking is None:
            return CompletionResult("not_found")
        if booking.status == BookingStatus.COMPLETED:
            return CompletionResult("already_completed", booking)
        if booking.status != BookingStatus.CONFIRMED:
            return CompletionResult("not_eligible", booking)

        now = self.clock()
        if now < booking.ends_at:
            return CompletionResult("trip_not_ended", booking)

        transition = complete_trip(to_ledger_state(booking), now)
        booking = await self._write(booking.id, booking.version, transition)
        return CompletionResult("completed", booking)

    async def expire_abandoned(self, booking_id: UUID) -> Booking:
        """
        Cancel a pending booking that never opened a checkout session.

        Raises:
            NotFoundError: If booking not found
            IllegalTransitionError: If a checkout was started meanwhile
            StaleVersionError: If the booking changed concurrently
        """
        booking = await self.get_booking(booking_id)
        transition = compute_abandonment(to_ledger_state(booking))
        return await self._write(
            booking.id,
            booking.version,
            transition,
            extra_values={"cancelled_at": self.clock(), "cancelled_by": "system"},
        )


    async def release_deposit(self, booking_id: UUID) -> Booking:
        """
        Queue the refund of a completed booking's deposit after its claim window.

        Raises:
            NotFoundError: If booking not found
            InvalidStateError: If a deposit case is open
            IllegalTransitionError: If the window is open or nothing can be released
            StaleVersionError: If the booking changed concurrently
        """
        booking = await self.get_booking(booking_id)
        if await has_open_case(self.db, booking_id):
            raise InvalidStateError("The deposit is held by an open deposit case")
        transition = compute_deposit_release(
            to_ledger_state(booking),
            booking.deposit_amount,
            self.clock(),
            timedelta(hours=self.settings.deposit_claim_window_hours),
        )
        return await self._write(booking.id, booking.version, transition)
