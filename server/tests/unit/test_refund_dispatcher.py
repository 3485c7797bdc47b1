"""Unit tests for the refund dispatcher."""

import pytest
from sqlalchemy import select

from rental_sync.core.exceptions import ProviderRejectedError, ProviderUnavailableError
from rental_sync.models import RefundRequest, RefundStatus
from rental_sync.services.refund_dispatcher import SUBMITTING_TIMEOUT, RefundDispatcher


@pytest.fixture
def dispatcher(test_session, fake_provider, clock):
    return RefundDispatcher(test_session, fake_provider, clock=clock)


@pytest.fixture
def queued_refund(ledger, create_booking, confirm_booking, renter, test_session):
    """Factory cancelling a paid booking, which queues its refund."""

    async def _queued():
        booking = await confirm_booking(await create_booking())
        await ledger.cancel_reservation(booking.id, renter)
        result = await test_session.execute(select(RefundRequest).where(RefundRequest.booking_id == booking.id))
        return result.scalar_one()

    return _queued


async def _status_of(test_session, request_id) -> str:
    result = await test_session.execute(select(RefundRequest.status).where(RefundRequest.id == request_id))
    return result.scalar_one()


@pytest.mark.asyncio
async def test_dispatch_submits_once(dispatcher, queued_refund, fake_provider, test_session):
    """Test that a queued refund is sent once with its idempotency key."""
    request = await queued_refund()

    first = await dispatcher.run()
    second = await dispatcher.run()

    assert first.submitted == 1
    assert second.submitted == 0
    assert len(fake_provider.refund_calls) == 1
    call = fake_provider.refund_calls[0]
    assert call["idempotency_key"] == request.idempotency_key
    assert call["amount"] == request.amount
    assert call["payment_intent_id"] == "pi_test_1"
    assert call["metadata"]["refund_request_id"] == str(request.id)
    assert await _status_of(test_session, request.id) == RefundStatus.SUBMITTED.value


@pytest.mark.asyncio
async def test_rejected_refund_fails(dispatcher, queued_refund, fake_provider, test_session):
    """Test that a refusal by the provider marks the request failed."""
    request = await queued_refund()
    fake_provider.refund_error = ProviderRejectedError("charge already refunded")

    report = await dispatcher.run()

    assert report.failed == 1
    assert await _status_of(test_session, request.id) == RefundStatus.FAILED.value


@pytest.mark.asyncio
async def test_unavailable_provider_makes_refund_ambiguous(dispatcher, queued_refund, fake_provider, test_session):
    """Test that an unknown outcome is never re-sent, only looked up."""
    request = await queued_refund()
    fake_provider.refund_error = ProviderUnavailableError("timed out")
    fake_provider.refund_lands_on_error = True

    report = await dispatcher.run()
    assert report.ambiguous == 1
    assert await _status_of(test_session, request.id) == RefundStatus.AMBIGUOUS.value

    fake_provider.refund_error = None
    report = await dispatcher.run()

    assert report.resolved == 1
    assert len(fake_provider.refund_calls) == 1
    assert await _status_of(test_session, request.id) == RefundStatus.SUBMITTED.value


@pytest.mark.asyncio
async def test_ambiguous_refund_missing_at_provider_fails(dispatcher, queued_refund, fake_provider, test_session):
    """Test that a refund the provider never received is failed for an operator."""
    request = await queued_refund()
    fake_provider.refund_error = ProviderUnavailableError("connection reset")

    await dispatcher.run()
    fake_provider.refund_error = None
    report = await dispatcher.run()

    assert report.failed == 1
    assert len(fake_provider.refund_calls) == 1
    assert await _status_of(test_session, request.id) == RefundStatus.FAILED.value


@pytest.mark.asyncio
async def test_abandoned_submission_becomes_ambiguous(dispatcher, queued_refund, fake_provider, test_session, clock):
    """Test that a request stuck in submitting is resolved by lookup, not re-sent."""
    request = await queued_refund()
    await dispatcher._set_status(request.id, RefundStatus.SUBMITTING, RefundStatus.QUEUED)
    clock.advance(seconds=SUBMITTING_TIMEOUT.total_seconds() + 1)

    report = await dispatcher.run()

    assert report.failed == 1
    assert fake_provider.refund_calls == []
    assert await _status_of(test_session, request.id) == RefundStatus.FAILED.value
