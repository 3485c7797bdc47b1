"""
Pure booking/payment state machine.

Every mutation of a booking is computed here from a ``LedgerState`` snapshot
and returns a ``Transition`` describing the new state and the side records
the persistence layer must write with it. Nothing in this module performs
I/O.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from ..core.exceptions import IllegalTransitionError, InvalidStateError, TooLateToCancelError
from .events import LedgerEventType, PaymentEvent
from .states import (
    AWAITING_PAYMENT,
    BookingStatus,
    LedgerState,
    PaymentStatus,
    check_invariants,
)


class SessionOutcome(str, Enum):
    COMPLETED = "completed"
    EXPIRED = "expired"


@dataclass(frozen=True)
class CloseSession:
    """Close the booking's active checkout session."""
    outcome: SessionOutcome
    expire_at_provider: bool = False


@dataclass(frozen=True)
class QueueRefund:
    """
    Queue a refund for the refund dispatcher.

    A refund queued ``once_per_booking`` is keyed by its reason alone, so a
    second one for the same booking is refused by the database.
    """
    amount: int
    reason: str
    once_per_booking: bool = False


@dataclass(frozen=True)
class OpenDepositCase:
    """Open a provider dispute case against a completed booking."""
    amount: int
    dispute_id: Optional[str]


@dataclass(frozen=True)
class ReverseHostPayout:
    """Claw back the host payout of a booking whose funds went back to the renter."""
    reason: str


Effect = CloseSession | QueueRefund | OpenDepositCase | ReverseHostPayout


@dataclass(frozen=True)
class Transition:
    event_type: LedgerEventType
    before: LedgerState
    after: LedgerState
    effects: tuple[Effect, ...] = field(default_factory=tuple)

    def effects_of(self, kind: type) -> list:
        return [effect for effect in self.effects if isinstance(effect, kind)]


class _Reject(Exception):
    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


_Result = tuple[LedgerState, tuple[Effect, ...]]


def _session_matches(state: LedgerState, event: PaymentEvent) -> bool:
    if event.provider_session_id is None:
        return True
    return event.provider_session_id == state.active_session_id


def _intent_matches(state: LedgerState, event: PaymentEvent) -> bool:
    if event.payment_intent_id is None or state.payment_intent_id is None:
        return True
    return event.payment_intent_id == state.payment_intent_id


def _with_refs(state: LedgerState, event: PaymentEvent, **changes) -> LedgerState:
    """Copy provider identifiers from the event without overwriting known ones."""
    return replace(
        state,
        payment_intent_id=state.payment_intent_id or event.payment_intent_id,
        charge_id=state.charge_id or event.charge_id,
        **changes,
    )


def _is_closed(state: LedgerState) -> bool:
    return state.status in (BookingStatus.CANCELLED, BookingStatus.PAYMENT_FAILED)


def _late_payment(state: LedgerState, event: PaymentEvent, amount: int, captured: int) -> _Result:
    """Money arrived for a booking that already left pending_payment."""
    if not _session_matches(state, event) or not _intent_matches(state, event):
        raise _Reject("payment belongs to a superseded checkout attempt")
    if amount <= 0:
        raise _Reject("late payment carried no funds")
    after = _with_refs(
        state,
        event,
        payment_status=PaymentStatus.REFUND_PENDING,
        amount_captured=captured,
    )
    return after, (
        CloseSession(SessionOutcome.COMPLETED),
        QueueRefund(amount=amount, reason="late_payment"),
    )


def _checkout_completed(state: LedgerState, event: PaymentEvent) -> _Result:
    # Completion and expiry of one session are mutually exclusive. Money that
    # still reaches a closed booking arrives as a capture and is refunded there.
    if state.status != BookingStatus.PENDING_PAYMENT:
        raise _Reject("booking is no longer awaiting payment")
    if not _session_matches(state, event):
        raise _Reject("session is not the booking's active checkout session")
    if state.payment_status not in AWAITING_PAYMENT:
        raise _Reject("no checkout session is open")

    if not event.checkout_paid:
        if state.payment_status == PaymentStatus.METHOD_COLLECTION_PENDING:
            raise _Reject("payment method collection already pending")
        return _with_refs(state, event, payment_status=PaymentStatus.METHOD_COLLECTION_PENDING), ()

    after = _with_refs(
        state, event, status=BookingStatus.CONFIRMED, payment_status=PaymentStatus.HELD
    )
    return after, (CloseSession(SessionOutcome.COMPLETED),)


def _checkout_expired(state: LedgerState, event: PaymentEvent) -> _Result:
    if state.status != BookingStatus.PENDING_PAYMENT:
        raise _Reject("booking is no longer awaiting payment")
    if not _session_matches(state, event):
        raise _Reject("session is not the booking's active checkout session")
    if state.payment_status not in AWAITING_PAYMENT:
        raise _Reject("no checkout session is open")
    if state.amount_captured > 0:
        raise _Reject("funds were already captured")
    after = replace(state, status=BookingStatus.CANCELLED, payment_status=PaymentStatus.FAILED)
    return after, (CloseSession(SessionOutcome.EXPIRED),)


def _payment_failed(state: LedgerState, event: PaymentEvent) -> _Result:
    if state.status != BookingStatus.PENDING_PAYMENT:
        raise _Reject("booking is no longer awaiting payment")
    if not _intent_matches(state, event):
        raise _Reject("payment intent belongs to a superseded checkout attempt")
    after = _with_refs(
        state, event, status=BookingStatus.PAYMENT_FAILED, payment_status=PaymentStatus.FAILED
    )
    effects: tuple[Effect, ...] = ()
    if state.payment_status in AWAITING_PAYMENT:
        effects = (CloseSession(SessionOutcome.EXPIRED, expire_at_provider=True),)
    return after, effects


def _payment_canceled(state: LedgerState, event: PaymentEvent) -> _Result:
    if not _intent_matches(state, event):
        raise _Reject("payment intent belongs to a superseded checkout attempt")
    if state.status == BookingStatus.PENDING_PAYMENT:
        after = _with_refs(
            state, event, status=BookingStatus.PAYMENT_FAILED, payment_status=PaymentStatus.FAILED
        )
        effects: tuple[Effect, ...] = ()
        if state.payment_status in AWAITING_PAYMENT:
            effects = (CloseSession(SessionOutcome.EXPIRED, expire_at_provider=True),)
        return after, effects
    if (
        state.status == BookingStatus.CONFIRMED
        and state.payment_status == PaymentStatus.HELD
        and state.amount_captured == 0
    ):
        return replace(
            state, status=BookingStatus.PAYMENT_FAILED, payment_status=PaymentStatus.FAILED
        ), ()
    raise _Reject("authorization is no longer cancellable")


def _authorized(state: LedgerState, event: PaymentEvent) -> _Result:
    if state.status != BookingStatus.PENDING_PAYMENT:
        # Uncaptured authorizations on closed bookings lapse at the provider
        raise _Reject("booking is no longer awaiting payment")
    if state.payment_status not in AWAITING_PAYMENT:
        raise _Reject("no checkout session is open")
    if not _intent_matches(state, event):
        raise _Reject("payment intent belongs to a superseded checkout attempt")
    after = _with_refs(
        state, event, status=BookingStatus.CONFIRMED, payment_status=PaymentStatus.HELD
    )
    return after, (CloseSession(SessionOutcome.COMPLETED),)


def _captured(state: LedgerState, event: PaymentEvent) -> _Result:
    amount = event.amount if event.amount is not None else state.amount_total
    if amount < 0:
        raise _Reject("negative capture amount")

    if state.status in (BookingStatus.CONFIRMED, BookingStatus.COMPLETED):
        if state.payment_status != PaymentStatus.HELD:
            raise _Reject("funds already captured")
        if not _intent_matches(state, event):
            raise _Reject("payment intent belongs to a superseded checkout attempt")
        return _with_refs(
            state,
            event,
            payment_status=PaymentStatus.TRANSFERRED,
            amount_captured=max(amount, state.amount_refunded),
        ), ()

    if state.status == BookingStatus.PENDING_PAYMENT:
        if state.payment_status not in AWAITING_PAYMENT:
            raise _Reject("no checkout session is open")
        if not _intent_matches(state, event):
            raise _Reject("payment intent belongs to a superseded checkout attempt")
        after = _with_refs(
            state,
            event,
            status=BookingStatus.CONFIRMED,
            payment_status=PaymentStatus.TRANSFERRED,
            amount_captured=amount,
        )
        return after, (CloseSession(SessionOutcome.COMPLETED),)

    # cancelled or payment_failed
    if state.payment_status == PaymentStatus.FAILED:
        return _late_payment(state, event, amount, captured=amount)
    if state.payment_status == PaymentStatus.REFUND_PENDING and state.amount_captured == 0:
        # Refund already queued; record what the provider settled
        return _with_refs(state, event, amount_captured=max(amount, state.amount_refunded)), ()
    raise _Reject("funds already captured")


def _charge_refunded(state: LedgerState, event: PaymentEvent) -> _Result:
    if state.payment_status not in (
        PaymentStatus.HELD,
        PaymentStatus.TRANSFERRED,
        PaymentStatus.REFUND_PENDING,
    ):
        raise _Reject("nothing refundable is outstanding")

    captured = state.amount_captured
    if captured == 0 and event.amount_captured:
        captured = event.amount_captured
    reported = event.amount_refunded if event.amount_refunded is not None else captured
    # Providers report the cumulative refunded amount on the charge
    refunded = min(max(state.amount_refunded, reported), captured)
    fully_refunded = captured == 0 or refunded >= captured

    if refunded <= state.amount_refunded and not fully_refunded:
        raise _Reject("refund already recorded")

    if fully_refunded:
        payment_status = PaymentStatus.REFUNDED
    elif state.payment_status == PaymentStatus.REFUND_PENDING:
        payment_status = PaymentStatus.REFUND_PENDING
    else:
        payment_status = PaymentStatus.TRANSFERRED

    after = _with_refs(
        state,
        event,
        payment_status=payment_status,
        amount_captured=captured,
        amount_refunded=refunded,
    )
    if fully_refunded and captured > 0:
        return after, (ReverseHostPayout(reason="refunded"),)
    return after, ()


def _refund_updated(state: LedgerState, event: PaymentEvent) -> _Result:
    refund_status = event.refund_status
    if refund_status in ("pending", "requires_action"):
        if state.payment_status not in (PaymentStatus.HELD, PaymentStatus.TRANSFERRED):
            raise _Reject("refund already tracked")
        return replace(state, payment_status=PaymentStatus.REFUND_PENDING), ()

    if state.payment_status != PaymentStatus.REFUND_PENDING:
        raise _Reject("no refund is pending")

    if refund_status == "succeeded":
        # Refunded amounts only ever come from the cumulative total on
        # charge.refunded; a refund's own amount is never added.
        fully_refunded = state.amount_captured == 0 or state.amount_refunded >= state.amount_captured
        if fully_refunded:
            payment_status = PaymentStatus.REFUNDED
        elif state.status in (BookingStatus.CONFIRMED, BookingStatus.COMPLETED):
            payment_status = PaymentStatus.TRANSFERRED
        else:
            raise _Reject("refund amounts for a closed booking settle through charge.refunded")
        return replace(state, payment_status=payment_status), ()

    if refund_status in ("failed", "canceled"):
        if _is_closed(state):
            raise _Reject("refund for a closed booking failed and needs operator attention")
        payment_status = PaymentStatus.TRANSFERRED if state.amount_captured > 0 else PaymentStatus.HELD
        return replace(state, payment_status=payment_status), ()

    raise _Reject(f"unhandled refund status {refund_status!r}")


def _dispute_created(state: LedgerState, event: PaymentEvent) -> _Result:
    if state.status != BookingStatus.COMPLETED:
        raise _Reject("disputes open deposit cases only after completion")
    return state, (
        OpenDepositCase(amount=event.amount or 0, dispute_id=event.dispute_id),
        ReverseHostPayout(reason="disputed"),
    )


def _authorized_or_captured(state: LedgerState, event: PaymentEvent) -> _Result:
    if event.captured:
        return _captured(state, event)
    return _authorized(state, event)


_HANDLERS: dict[LedgerEventType, Callable[[LedgerState, PaymentEvent], _Result]] = {
    LedgerEventType.CHECKOUT_COMPLETED: _checkout_completed,
    LedgerEventType.CHECKOUT_EXPIRED: _checkout_expired,
    LedgerEventType.PAYMENT_FAILED: _payment_failed,
    LedgerEventType.PAYMENT_CANCELED: _payment_canceled,
    LedgerEventType.AMOUNT_CAPTURABLE: _authorized,
    LedgerEventType.PAYMENT_SUCCEEDED: _captured,
    LedgerEventType.CHARGE_SUCCEEDED: _authorized_or_captured,
    LedgerEventType.CHARGE_REFUNDED: _charge_refunded,
    LedgerEventType.REFUND_UPDATED: _refund_updated,
    LedgerEventType.DISPUTE_CREATED: _dispute_created,
}


def _illegal(state: LedgerState, event_type: LedgerEventType, reason: str) -> IllegalTransitionError:
    return IllegalTransitionError(
        event_type=event_type.value,
        status=state.status.value,
        payment_status=state.payment_status.value,
        reason=reason,
    )


def _finish(
    event_type: LedgerEventType,
    before: LedgerState,
    after: LedgerState,
    effects: tuple[Effect, ...] = (),
) -> Transition:
    violations = check_invariants(after)
    if violations:
        raise _illegal(before, event_type, "; ".join(violations))
    return Transition(event_type=event_type, before=before, after=after, effects=effects)


def apply_payment_event(state: LedgerState, event: PaymentEvent) -> Transition:
    """
    Compute the effect of a provider payment event on a booking.

    Raises:
        IllegalTransitionError: If the event does not apply to the current
            state (stale, duplicate or superseded delivery)
    """
    handler = _HANDLERS.get(event.type)
    if handler is None:
        raise _illegal(state, event.type, "not a payment event")
    try:
        after, effects = handler(state, event)
    except _Reject as reject:
        raise _illegal(state, event.type, reject.reason)
    return _finish(event.type, state, after, effects)


def open_checkout(state: LedgerState, provider_session_id: str) -> Transition:
    """Point the booking at a freshly created checkout session, closing the one it replaces."""
    if state.status != BookingStatus.PENDING_PAYMENT:
        raise InvalidStateError(f"Checkout requires a pending_payment booking, not {state.status.value}")
    if state.payment_status == PaymentStatus.METHOD_COLLECTION_PENDING:
        raise InvalidStateError("A payment is already being processed for this booking")
    after = replace(
        state,
        payment_status=PaymentStatus.CHECKOUT_CREATED,
        active_session_id=provider_session_id,
    )
    effects: tuple[Effect, ...] = ()
    if state.active_session_id and state.active_session_id != provider_session_id:
        effects = (CloseSession(SessionOutcome.EXPIRED),)
    return _finish(LedgerEventType.CHECKOUT_OPENED, state, after, effects)


def cancel_reservation(state: LedgerState, now: datetime, booking_id: str = "") -> Transition:
    """
    Cancel a reservation before the trip starts.

    A paid booking keeps its payment record and queues a refund of whatever
    was captured and not yet refunded.

    Raises:
        InvalidStateError: If the booking already completed or failed
        TooLateToCancelError: If the trip already started
    """
    if state.status not in (BookingStatus.PENDING_PAYMENT, BookingStatus.CONFIRMED):
        raise InvalidStateError(f"A {state.status.value} booking cannot be cancelled")
    if now >= state.starts_at:
        raise TooLateToCancelError(booking_id, state.starts_at.isoformat())

    event_type = LedgerEventType.RESERVATION_CANCELLED
    if state.status == BookingStatus.PENDING_PAYMENT:
        after = replace(state, status=BookingStatus.CANCELLED, payment_status=PaymentStatus.FAILED)
        effects: tuple[Effect, ...] = ()
        if state.payment_status in AWAITING_PAYMENT:
            effects = (CloseSession(SessionOutcome.EXPIRED, expire_at_provider=True),)
        return _finish(event_type, state, after, effects)

    if state.payment_status == PaymentStatus.HELD:
        amount = state.amount_total
    elif state.payment_status == PaymentStatus.TRANSFERRED:
        amount = state.refundable_amount
    else:
        # refund_pending or refunded: nothing new to return
        after = replace(state, status=BookingStatus.CANCELLED)
        return _finish(event_type, state, after)

    if amount <= 0:
        after = replace(state, status=BookingStatus.CANCELLED, payment_status=PaymentStatus.REFUNDED)
        return _finish(event_type, state, after)

    after = replace(state, status=BookingStatus.CANCELLED, payment_status=PaymentStatus.REFUND_PENDING)
    return _finish(event_type, state, after, (QueueRefund(amount=amount, reason="cancellation"),))


def expire_abandoned(state: LedgerState) -> Transition:
    """Cancel a reservation that never opened a checkout session."""
    if state.status != BookingStatus.PENDING_PAYMENT or state.payment_status != PaymentStatus.NOT_STARTED:
        raise _illegal(state, LedgerEventType.RESERVATION_ABANDONED, "checkout was started")
    after = replace(state, status=BookingStatus.CANCELLED, payment_status=PaymentStatus.FAILED)
    return _finish(LedgerEventType.RESERVATION_ABANDONED, state, after)


def complete_trip(state: LedgerState, now: datetime) -> Transition:
    """Mark a confirmed booking whose trip ended as completed."""
    if state.status != BookingStatus.CONFIRMED:
        raise _illegal(state, LedgerEventType.TRIP_COMPLETED, "only confirmed bookings complete")
    if now < state.ends_at:
        raise _illegal(state, LedgerEventType.TRIP_COMPLETED, "trip has not ended")
    after = replace(state, status=BookingStatus.COMPLETED, completed_at=now)
    return _finish(LedgerEventType.TRIP_COMPLETED, state, after)


def release_deposit(
    state: LedgerState, deposit_amount: int, now: datetime, claim_window: timedelta
) -> Transition:
    """
    Return the deposit of a completed booking once its claim window closed.

    The caller checks that no deposit case is open.
    """
    event_type = LedgerEventType.DEPOSIT_RELEASED
    if state.status != BookingStatus.COMPLETED:
        raise _illegal(state, event_type, "only completed bookings release deposits")
    if now < state.completed_at + claim_window:
        raise _illegal(state, event_type, "deposit claim window is still open")
    if state.payment_status != PaymentStatus.TRANSFERRED:
        raise _illegal(state, event_type, "no settled capture to release the deposit from")
    amount = min(deposit_amount, state.refundable_amount)
    if amount <= 0:
        raise _illegal(state, event_type, "nothing to release")
    after = replace(state, payment_status=PaymentStatus.REFUND_PENDING)
    return _finish(
        event_type, state, after, (QueueRefund(amount=amount, reason="deposit_release", once_per_booking=True),)
    )
