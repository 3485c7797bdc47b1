"""Unit tests for the stale checkout sweep."""

from dataclasses import replace

import pytest
from sqlalchemy import select

from rental_sync.core.exceptions import ProviderUnavailableError
from rental_sync.ledger import BookingStatus, LedgerEventType, PaymentEvent, PaymentStatus
from rental_sync.models import CheckoutSession, CheckoutSessionStatus
from rental_sync.services.stale_checkout_sweep import StaleCheckoutSweep

HOUR_MS = 60 * 60 * 1000


@pytest.fixture
def sweep(test_session, fake_provider, clock):
    return StaleCheckoutSweep(test_session, fake_provider, clock=clock)


async def _stale_session(ledger, create_booking, **booking_kwargs):
    """Create a booking with an open checkout session."""
    booking = await create_booking(**booking_kwargs)
    session = await ledger.open_checkout_session(booking.id)
    return booking, session


@pytest.mark.asyncio
async def test_expired_session_cancels_booking(sweep, ledger, create_booking, fake_provider, clock):
    """Test that a session the provider expired cancels its booking."""
    booking, session = await _stale_session(ledger, create_booking)
    fake_provider.lapse(session.provider_session_id)
    clock.advance(hours=2)

    report = await sweep.run()

    assert report.examined == 1
    assert report.applied == 1
    booking = await ledger.get_booking(booking.id)
    assert booking.status == BookingStatus.CANCELLED
    assert booking.payment_status == PaymentStatus.FAILED


@pytest.mark.asyncio
async def test_paid_session_confirms_booking(sweep, ledger, create_booking, fake_provider, clock, test_session):
    """Test that a session paid without a webhook confirms its booking."""
    booking, session = await _stale_session(ledger, create_booking)
    fake_provider.pay(session.provider_session_id, payment_intent_id="pi_sweep")
    clock.advance(hours=2)

    report = await sweep.run()

    assert report.applied == 1
    booking = await ledger.get_booking(booking.id)
    assert booking.status == BookingStatus.CONFIRMED
    assert booking.payment_intent_id == "pi_sweep"

    result = await test_session.execute(select(CheckoutSession.status))
    assert result.scalars().all() == [CheckoutSessionStatus.COMPLETED.value]


@pytest.mark.asyncio
async def test_open_session_left_alone(sweep, ledger, create_booking, clock, test_session):
    """Test that a still-open session is only marked as checked."""
    booking, session = await _stale_session(ledger, create_booking)
    clock.advance(hours=2)

    report = await sweep.run()

    assert report.still_open == 1
    assert report.applied == 0
    result = await test_session.execute(
        select(CheckoutSession.last_reconciled_at).where(CheckoutSession.id == session.id)
    )
    assert result.scalar_one() == clock()
    booking = await ledger.get_booking(booking.id)
    assert booking.status == BookingStatus.PENDING_PAYMENT


@pytest.mark.asyncio
async def test_young_sessions_skipped(sweep, ledger, create_booking, clock):
    """Test that sessions younger than the threshold are not queried."""
    await _stale_session(ledger, create_booking)
    clock.advance(minutes=10)

    report = await sweep.run(older_than_ms=HOUR_MS)

    assert report.examined == 0


@pytest.mark.asyncio
async def test_query_failure_is_counted_and_skipped(sweep, ledger, create_booking, fake_provider, clock):
    """Test that one failed provider query does not abort the sweep."""
    booking, _ = await _stale_session(ledger, create_booking)
    fake_provider.retrieve_error = ProviderUnavailableError("timed out")
    clock.advance(hours=2)

    report = await sweep.run()

    assert report.examined == 1
    assert report.failed == 1
    booking = await ledger.get_booking(booking.id)
    assert booking.status == BookingStatus.PENDING_PAYMENT


@pytest.mark.asyncio
async def test_inapplicable_state_is_dropped_and_closed(
    sweep, ledger, create_booking, fake_provider, clock, test_session
):
    """Test that a provider state the booking cannot take is dropped and the row closed."""
    booking, session = await _stale_session(ledger, create_booking)
    current = await ledger.get_booking(booking.id)
    await ledger.apply_payment_event(
        booking.id,
        PaymentEvent(
            type=LedgerEventType.CHECKOUT_COMPLETED,
            provider_session_id=session.provider_session_id,
            checkout_paid=False,
        ),
        current.version,
    )
    # Completed at the provider while the payment method is still being collected
    fake_provider.sessions[session.provider_session_id] = replace(
        fake_provider.sessions[session.provider_session_id], status="complete"
    )
    clock.advance(hours=2)

    report = await sweep.run()

    assert report.examined == 1
    assert report.dropped == 1
    booking = await ledger.get_booking(booking.id)
    assert booking.payment_status == PaymentStatus.METHOD_COLLECTION_PENDING
    result = await test_session.execute(select(CheckoutSession.status))
    assert result.scalars().all() == [CheckoutSessionStatus.COMPLETED.value]


@pytest.mark.asyncio
async def test_limit_bounds_examined_sessions(sweep, ledger, create_booking, fake_provider, clock):
    """Test that the limit caps the number of provider queries."""
    for car in ("car_1", "car_2", "car_3"):
        _, session = await _stale_session(ledger, create_booking, car_id=car)
        fake_provider.lapse(session.provider_session_id)
    clock.advance(hours=2)

    report = await sweep.run(limit=2)

    assert report.examined == 2
    assert report.applied == 2


@pytest.mark.asyncio
async def test_stop_flag_ends_sweep_early(sweep, ledger, create_booking, fake_provider, clock):
    """Test that the stop flag is honored between sessions."""
    for car in ("car_1", "car_2"):
        _, session = await _stale_session(ledger, create_booking, car_id=car)
        fake_provider.lapse(session.provider_session_id)
    clock.advance(hours=2)

    checks = []

    def should_stop():
        checks.append(True)
        return len(checks) > 1

    report = await sweep.run(should_stop=should_stop)

    assert report.examined == 1
    assert report.stopped_early
    assert report.abandoned_cancelled == 0


@pytest.mark.asyncio
async def test_abandoned_booking_cancelled(sweep, ledger, create_booking, clock):
    """Test that a booking that never opened checkout is cancelled once stale."""
    booking = await create_booking()
    clock.advance(hours=2)

    report = await sweep.run()

    assert report.abandoned_cancelled == 1
    booking = await ledger.get_booking(booking.id)
    assert booking.status == BookingStatus.CANCELLED
    assert booking.cancelled_by == "system"


@pytest.mark.asyncio
async def test_report_as_dict(sweep):
    """Test that an empty sweep reports zero counts."""
    report = await sweep.run()

    assert report.as_dict() == {
        "examined": 0,
        "applied": 0,
        "dropped": 0,
        "still_open": 0,
        "failed": 0,
        "abandoned_cancelled": 0,
        "stopped_early": False,
    }
