"""Unit tests for the pure booking state machine."""

from dataclasses import replace
from datetime import datetime, timedelta

import pytest

from rental_sync.core.exceptions import IllegalTransitionError, InvalidStateError, TooLateToCancelError
from rental_sync.ledger import (
    BookingStatus,
    CloseSession,
    LedgerEventType,
    LedgerState,
    OpenDepositCase,
    PaymentEvent,
    PaymentStatus,
    QueueRefund,
    ReverseHostPayout,
    SessionOutcome,
    apply_payment_event,
    cancel_reservation,
    check_invariants,
    complete_trip,
    expire_abandoned,
    open_checkout,
    release_deposit,
)

NOW = datetime(2026, 6, 1, 12, 0, 0)


@pytest.fixture
def pending():
    return LedgerState(
        status=BookingStatus.PENDING_PAYMENT,
        payment_status=PaymentStatus.NOT_STARTED,
        starts_at=NOW + timedelta(days=7),
        ends_at=NOW + timedelta(days=10),
        amount_total=30000,
    )


@pytest.fixture
def awaiting(pending):
    return open_checkout(pending, "cs_1").after


@pytest.fixture
def confirmed(awaiting):
    event = PaymentEvent(
        type=LedgerEventType.CHECKOUT_COMPLETED,
        provider_session_id="cs_1",
        payment_intent_id="pi_1",
        amount=30000,
    )
    return apply_payment_event(awaiting, event).after


@pytest.fixture
def transferred(confirmed):
    event = PaymentEvent(type=LedgerEventType.PAYMENT_SUCCEEDED, payment_intent_id="pi_1", amount=30000)
    return apply_payment_event(confirmed, event).after


def test_open_checkout_points_at_session(pending):
    transition = open_checkout(pending, "cs_1")

    assert transition.after.payment_status == PaymentStatus.CHECKOUT_CREATED
    assert transition.after.active_session_id == "cs_1"
    assert transition.effects == ()


def test_open_checkout_supersedes_previous_session(awaiting):
    transition = open_checkout(awaiting, "cs_2")

    assert transition.after.active_session_id == "cs_2"
    assert transition.effects == (CloseSession(SessionOutcome.EXPIRED),)


def test_open_checkout_rejects_confirmed_booking(confirmed):
    with pytest.raises(InvalidStateError):
        open_checkout(confirmed, "cs_2")


def test_checkout_completed_paid_confirms(awaiting):
    event = PaymentEvent(
        type=LedgerEventType.CHECKOUT_COMPLETED,
        provider_session_id="cs_1",
        payment_intent_id="pi_1",
    )
    transition = apply_payment_event(awaiting, event)

    assert transition.after.status == BookingStatus.CONFIRMED
    assert transition.after.payment_status == PaymentStatus.HELD
    assert transition.after.payment_intent_id == "pi_1"
    assert transition.effects_of(CloseSession) == [CloseSession(SessionOutcome.COMPLETED)]


def test_checkout_completed_unpaid_waits_for_method(awaiting):
    event = PaymentEvent(
        type=LedgerEventType.CHECKOUT_COMPLETED,
        provider_session_id="cs_1",
        checkout_paid=False,
    )
    transition = apply_payment_event(awaiting, event)

    assert transition.after.status == BookingStatus.PENDING_PAYMENT
    assert transition.after.payment_status == PaymentStatus.METHOD_COLLECTION_PENDING


def test_checkout_completed_for_superseded_session_is_illegal(awaiting):
    event = PaymentEvent(type=LedgerEventType.CHECKOUT_COMPLETED, provider_session_id="cs_old")

    with pytest.raises(IllegalTransitionError) as exc_info:
        apply_payment_event(awaiting, event)

    assert exc_info.value.status == "pending_payment"
    assert "active checkout session" in exc_info.value.reason


def test_duplicate_checkout_completed_is_illegal(confirmed):
    event = PaymentEvent(type=LedgerEventType.CHECKOUT_COMPLETED, provider_session_id="cs_1")

    with pytest.raises(IllegalTransitionError):
        apply_payment_event(confirmed, event)


def test_checkout_expired_cancels(awaiting):
    event = PaymentEvent(type=LedgerEventType.CHECKOUT_EXPIRED, provider_session_id="cs_1")
    transition = apply_payment_event(awaiting, event)

    assert transition.after.status == BookingStatus.CANCELLED
    assert transition.after.payment_status == PaymentStatus.FAILED
    assert transition.effects == (CloseSession(SessionOutcome.EXPIRED),)


def test_checkout_expired_after_confirmation_is_illegal(confirmed):
    event = PaymentEvent(type=LedgerEventType.CHECKOUT_EXPIRED, provider_session_id="cs_1")

    with pytest.raises(IllegalTransitionError):
        apply_payment_event(confirmed, event)


def test_payment_failed_expires_open_session(awaiting):
    event = PaymentEvent(type=LedgerEventType.PAYMENT_FAILED, payment_intent_id="pi_1")
    transition = apply_payment_event(awaiting, event)

    assert transition.after.status == BookingStatus.PAYMENT_FAILED
    assert transition.after.payment_status == PaymentStatus.FAILED
    assert transition.effects == (CloseSession(SessionOutcome.EXPIRED, expire_at_provider=True),)


def test_authorization_holds_funds(awaiting):
    event = PaymentEvent(type=LedgerEventType.AMOUNT_CAPTURABLE, payment_intent_id="pi_1", amount=30000)
    transition = apply_payment_event(awaiting, event)

    assert transition.after.status == BookingStatus.CONFIRMED
    assert transition.after.payment_status == PaymentStatus.HELD
    assert transition.after.amount_captured == 0


def test_capture_after_hold_transfers(confirmed):
    event = PaymentEvent(type=LedgerEventType.PAYMENT_SUCCEEDED, payment_intent_id="pi_1", amount=30000)
    transition = apply_payment_event(confirmed, event)

    assert transition.after.status == BookingStatus.CONFIRMED
    assert transition.after.payment_status == PaymentStatus.TRANSFERRED
    assert transition.after.amount_captured == 30000


def test_capture_from_other_intent_is_illegal(confirmed):
    event = PaymentEvent(type=LedgerEventType.PAYMENT_SUCCEEDED, payment_intent_id="pi_other", amount=30000)

    with pytest.raises(IllegalTransitionError):
        apply_payment_event(confirmed, event)


def test_uncaptured_charge_is_an_authorization(awaiting):
    event = PaymentEvent(
        type=LedgerEventType.CHARGE_SUCCEEDED,
        payment_intent_id="pi_1",
        charge_id="ch_1",
        captured=False,
        amount=30000,
    )
    transition = apply_payment_event(awaiting, event)

    assert transition.after.payment_status == PaymentStatus.HELD
    assert transition.after.charge_id == "ch_1"


def test_checkout_completed_after_expiry_is_illegal(awaiting):
    cancelled = apply_payment_event(
        awaiting, PaymentEvent(type=LedgerEventType.CHECKOUT_EXPIRED, provider_session_id="cs_1")
    ).after
    event = PaymentEvent(
        type=LedgerEventType.CHECKOUT_COMPLETED,
        provider_session_id="cs_1",
        payment_intent_id="pi_1",
        amount=30000,
    )

    with pytest.raises(IllegalTransitionError) as exc_info:
        apply_payment_event(cancelled, event)

    assert exc_info.value.status == "cancelled"
    assert exc_info.value.payment_status == "failed"


def test_checkout_expired_after_completion_is_illegal(awaiting):
    completed = PaymentEvent(
        type=LedgerEventType.CHECKOUT_COMPLETED,
        provider_session_id="cs_1",
        payment_intent_id="pi_1",
        amount=30000,
    )
    confirmed = apply_payment_event(awaiting, completed).after

    with pytest.raises(IllegalTransitionError):
        apply_payment_event(
            confirmed, PaymentEvent(type=LedgerEventType.CHECKOUT_EXPIRED, provider_session_id="cs_1")
        )


def test_late_capture_on_cancelled_booking_queues_refund(awaiting):
    cancelled = apply_payment_event(
        awaiting, PaymentEvent(type=LedgerEventType.CHECKOUT_EXPIRED, provider_session_id="cs_1")
    ).after
    event = PaymentEvent(type=LedgerEventType.PAYMENT_SUCCEEDED, payment_intent_id="pi_1", amount=30000)

    transition = apply_payment_event(cancelled, event)

    assert transition.after.status == BookingStatus.CANCELLED
    assert transition.after.payment_status == PaymentStatus.REFUND_PENDING
    assert transition.after.amount_captured == 30000
    assert transition.effects_of(QueueRefund) == [QueueRefund(amount=30000, reason="late_payment")]

    # Redelivered capture
    with pytest.raises(IllegalTransitionError):
        apply_payment_event(transition.after, event)


def test_late_charge_on_payment_failed_booking_queues_refund(awaiting):
    failed = apply_payment_event(
        awaiting, PaymentEvent(type=LedgerEventType.PAYMENT_FAILED, payment_intent_id="pi_1")
    ).after
    event = PaymentEvent(
        type=LedgerEventType.CHARGE_SUCCEEDED,
        payment_intent_id="pi_1",
        charge_id="ch_1",
        captured=True,
        amount=30000,
    )

    transition = apply_payment_event(failed, event)

    assert transition.after.payment_status == PaymentStatus.REFUND_PENDING
    assert transition.effects_of(QueueRefund) == [QueueRefund(amount=30000, reason="late_payment")]


def test_charge_refunded_uses_cumulative_amount(transferred):
    partial = PaymentEvent(
        type=LedgerEventType.CHARGE_REFUNDED, payment_intent_id="pi_1", amount_refunded=10000
    )
    after_partial = apply_payment_event(transferred, partial).after
    assert after_partial.amount_refunded == 10000
    assert after_partial.payment_status == PaymentStatus.TRANSFERRED

    # A redelivered older total never lowers what was recorded
    with pytest.raises(IllegalTransitionError):
        apply_payment_event(after_partial, partial)

    full = replace(partial, amount_refunded=30000)
    after_full = apply_payment_event(after_partial, full).after
    assert after_full.amount_refunded == 30000
    assert after_full.payment_status == PaymentStatus.REFUNDED


def test_charge_refunded_is_clamped_to_captured(transferred):
    event = PaymentEvent(
        type=LedgerEventType.CHARGE_REFUNDED, payment_intent_id="pi_1", amount_refunded=99999
    )
    after = apply_payment_event(transferred, event).after

    assert after.amount_refunded == after.amount_captured == 30000


def test_refund_updated_lifecycle(transferred):
    pending_refund = PaymentEvent(type=LedgerEventType.REFUND_UPDATED, refund_status="pending", amount=5000)
    state = apply_payment_event(transferred, pending_refund).after
    assert state.payment_status == PaymentStatus.REFUND_PENDING

    failed = replace(pending_refund, refund_status="failed")
    assert apply_payment_event(state, failed).after.payment_status == PaymentStatus.TRANSFERRED

    succeeded = replace(pending_refund, refund_status="succeeded")
    after = apply_payment_event(state, succeeded).after
    assert after.payment_status == PaymentStatus.TRANSFERRED
    # Amounts are only taken from charge.refunded
    assert after.amount_refunded == 0


def test_refund_updated_interleaved_with_charge_refunded_counts_once(transferred):
    pending_refund = PaymentEvent(
        type=LedgerEventType.REFUND_UPDATED, refund_status="pending", refund_id="re_1", amount=10000
    )
    charge_refunded = PaymentEvent(
        type=LedgerEventType.CHARGE_REFUNDED, payment_intent_id="pi_1", amount_refunded=10000
    )
    succeeded = replace(pending_refund, refund_status="succeeded")

    state = apply_payment_event(transferred, pending_refund).after
    state = apply_payment_event(state, charge_refunded).after
    state = apply_payment_event(state, succeeded).after

    assert state.amount_refunded == 10000
    assert state.payment_status == PaymentStatus.TRANSFERRED

    # Redelivering the success after a crash changes nothing
    with pytest.raises(IllegalTransitionError):
        apply_payment_event(state, succeeded)

    # The remainder is still refundable in full
    cancelled = cancel_reservation(state, NOW)
    assert cancelled.effects == (QueueRefund(amount=20000, reason="cancellation"),)


def test_refund_success_on_closed_booking_waits_for_charge_refunded(transferred):
    cancelled = cancel_reservation(transferred, NOW).after
    succeeded = PaymentEvent(type=LedgerEventType.REFUND_UPDATED, refund_status="succeeded", amount=30000)

    with pytest.raises(IllegalTransitionError):
        apply_payment_event(cancelled, succeeded)

    refunded = apply_payment_event(
        cancelled,
        PaymentEvent(type=LedgerEventType.CHARGE_REFUNDED, payment_intent_id="pi_1", amount_refunded=30000),
    ).after
    assert refunded.payment_status == PaymentStatus.REFUNDED
    assert refunded.amount_refunded == 30000


def test_full_refund_reverses_host_payout(transferred):
    partial = PaymentEvent(
        type=LedgerEventType.CHARGE_REFUNDED, payment_intent_id="pi_1", amount_refunded=10000
    )
    assert apply_payment_event(transferred, partial).effects == ()

    full = apply_payment_event(transferred, replace(partial, amount_refunded=30000))
    assert full.effects == (ReverseHostPayout(reason="refunded"),)

def test_dispute_only_applies_to_completed_booking(transferred):
    event = PaymentEvent(type=LedgerEventType.DISPUTE_CREATED, amount=5000, dispute_id="dp_1")

    with pytest.raises(IllegalTransitionError):
        apply_payment_event(transferred, event)

    completed = complete_trip(transferred, transferred.ends_at).after
    transition = apply_payment_event(completed, event)

    assert transition.after == completed
    assert transition.effects == (
        OpenDepositCase(amount=5000, dispute_id="dp_1"),
        ReverseHostPayout(reason="disputed"),
    )


def test_cancel_pending_booking(awaiting):
    transition = cancel_reservation(awaiting, NOW)

    assert transition.after.status == BookingStatus.CANCELLED
    assert transition.after.payment_status == PaymentStatus.FAILED
    assert transition.effects == (CloseSession(SessionOutcome.EXPIRED, expire_at_provider=True),)


def test_cancel_held_booking_refunds_total(confirmed):
    transition = cancel_reservation(confirmed, NOW)

    assert transition.after.status == BookingStatus.CANCELLED
    assert transition.after.payment_status == PaymentStatus.REFUND_PENDING
    assert transition.effects == (QueueRefund(amount=30000, reason="cancellation"),)


def test_cancel_transferred_booking_refunds_remainder(transferred):
    partly_refunded = replace(transferred, amount_refunded=10000)
    transition = cancel_reservation(partly_refunded, NOW)

    assert transition.effects == (QueueRefund(amount=20000, reason="cancellation"),)


def test_cancel_after_start_is_too_late(confirmed):
    with pytest.raises(TooLateToCancelError):
        cancel_reservation(confirmed, confirmed.starts_at)


def test_cancel_completed_booking_is_invalid(transferred):
    completed = complete_trip(transferred, transferred.ends_at).after

    with pytest.raises(InvalidStateError):
        cancel_reservation(completed, NOW)


def test_expire_abandoned_only_before_checkout(pending, awaiting):
    assert expire_abandoned(pending).after.status == BookingStatus.CANCELLED

    with pytest.raises(IllegalTransitionError):
        expire_abandoned(awaiting)


def test_complete_trip_requires_end(confirmed):
    with pytest.raises(IllegalTransitionError):
        complete_trip(confirmed, confirmed.ends_at - timedelta(seconds=1))

    after = complete_trip(confirmed, confirmed.ends_at).after
    assert after.status == BookingStatus.COMPLETED
    assert after.completed_at == confirmed.ends_at


def test_check_invariants_reports_violations(pending):
    broken = replace(
        pending,
        status=BookingStatus.CONFIRMED,
        payment_status=PaymentStatus.NOT_STARTED,
        amount_refunded=5,
    )

    violations = check_invariants(broken)

    assert len(violations) == 2
    assert check_invariants(pending) == []


@pytest.fixture
def completed(transferred):
    return complete_trip(transferred, transferred.ends_at).after


def test_release_deposit_after_claim_window(completed):
    window = timedelta(hours=72)
    transition = release_deposit(completed, 10000, completed.completed_at + window, window)

    assert transition.after.status == BookingStatus.COMPLETED
    assert transition.after.payment_status == PaymentStatus.REFUND_PENDING
    assert transition.effects == (QueueRefund(amount=10000, reason="deposit_release", once_per_booking=True),)


def test_release_deposit_inside_claim_window_is_illegal(completed):
    window = timedelta(hours=72)

    with pytest.raises(IllegalTransitionError) as exc_info:
        release_deposit(completed, 10000, completed.completed_at + window - timedelta(seconds=1), window)

    assert "still open" in exc_info.value.reason


def test_release_deposit_is_capped_at_refundable_amount(completed):
    partly_refunded = replace(completed, amount_refunded=25000)
    later = completed.completed_at + timedelta(days=5)

    transition = release_deposit(partly_refunded, 10000, later, timedelta(hours=72))

    assert transition.effects_of(QueueRefund)[0].amount == 5000


def test_release_deposit_only_once(completed):
    window = timedelta(hours=72)
    released = release_deposit(completed, 10000, completed.completed_at + window, window).after

    with pytest.raises(IllegalTransitionError):
        release_deposit(released, 10000, completed.completed_at + window, window)


def test_release_deposit_requires_completion(transferred):
    with pytest.raises(IllegalTransitionError):
        release_deposit(transferred, 10000, NOW + timedelta(days=30), timedelta(hours=72))
