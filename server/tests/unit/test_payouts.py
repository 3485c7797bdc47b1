"""Unit tests for host payouts."""

import pytest
from sqlalchemy import select

from rental_sync.core.exceptions import ProviderRejectedError, ProviderUnavailableError
from rental_sync.ledger import LedgerEventType, PaymentEvent
from rental_sync.models import HostAccount, HostPayout, PayoutStatus
from rental_sync.services.payouts import PayoutDispatcher, host_payout_amount


@pytest.fixture
def dispatcher(test_session, fake_provider, clock):
    return PayoutDispatcher(test_session, fake_provider, clock=clock)


@pytest.fixture
def payout_account(test_session):
    """Factory registering a payout-enabled connected account for a host."""

    async def _account(host_id: str = "host_1", payouts_enabled: bool = True):
        account = HostAccount(
            host_id=host_id,
            provider_account_id=f"acct_{host_id}",
            details_submitted=True,
            payouts_enabled=payouts_enabled,
        )
        test_session.add(account)
        await test_session.commit()
        return account

    return _account


async def _payout_of(test_session, booking_id) -> HostPayout:
    result = await test_session.execute(select(HostPayout).where(HostPayout.booking_id == booking_id))
    payout = result.scalar_one()
    await test_session.refresh(payout)
    return payout


async def _refund_in_full(ledger, booking_id):
    booking = await ledger.get_booking(booking_id)
    event = PaymentEvent(
        type=LedgerEventType.CHARGE_REFUNDED,
        payment_intent_id=booking.payment_intent_id,
        amount_refunded=booking.amount_captured,
    )
    await ledger.apply_payment_event(booking_id, event, booking.version)


async def _dispute(ledger, booking_id, dispute_id: str = "dp_1"):
    booking = await ledger.get_booking(booking_id)
    event = PaymentEvent(
        type=LedgerEventType.DISPUTE_CREATED,
        payment_intent_id=booking.payment_intent_id,
        amount=5000,
        dispute_id=dispute_id,
    )
    await ledger.apply_payment_event(booking_id, event, booking.version)


def test_payout_amount_excludes_deposit_and_fee():
    assert host_payout_amount(30000, 10000, 1000) == 18000
    assert host_payout_amount(30000, 0, 0) == 30000
    assert host_payout_amount(10000, 10000, 1000) == 0


@pytest.mark.asyncio
async def test_completed_booking_is_paid_out_once(
    dispatcher, settled_booking, payout_account, fake_provider, test_session
):
    """Test that a completed booking transfers the host share once."""
    await payout_account()
    booking = await settled_booking()

    first = await dispatcher.run()
    second = await dispatcher.run()

    assert first.queued == 1
    assert first.transferred == 1
    assert not second
    assert len(fake_provider.transfer_calls) == 1
    call = fake_provider.transfer_calls[0]
    assert call["amount"] == 18000
    assert call["destination_account_id"] == "acct_host_1"
    assert call["idempotency_key"] == f"payout-{booking.id}"
    assert call["transfer_group"] == f"booking-{booking.id}"

    payout = await _payout_of(test_session, booking.id)
    assert payout.status == PayoutStatus.TRANSFERRED.value
    assert payout.provider_transfer_id == fake_provider.transfers[0][1].id
    assert call["metadata"]["payout_id"] == str(payout.id)


@pytest.mark.asyncio
async def test_payout_waits_for_payout_enabled_account(
    dispatcher, settled_booking, payout_account, fake_provider, test_session
):
    """Test that a host without a usable account is paid once onboarding finishes."""
    booking = await settled_booking()

    report = await dispatcher.run()

    assert report.queued == 1
    assert report.waiting == 1
    assert fake_provider.transfer_calls == []
    assert (await _payout_of(test_session, booking.id)).status == PayoutStatus.QUEUED.value

    await payout_account()
    report = await dispatcher.run()

    assert report.transferred == 1
    assert (await _payout_of(test_session, booking.id)).status == PayoutStatus.TRANSFERRED.value


@pytest.mark.asyncio
async def test_unconfirmed_bookings_are_not_paid(dispatcher, create_booking, confirm_booking, payout_account):
    """Test that only completed trips produce payouts."""
    await payout_account()
    await confirm_booking(await create_booking())

    assert not await dispatcher.run()


@pytest.mark.asyncio
async def test_rejected_transfer_fails(dispatcher, settled_booking, payout_account, fake_provider, test_session):
    """Test that a refusal by the provider marks the payout failed."""
    await payout_account()
    booking = await settled_booking()
    fake_provider.transfer_error = ProviderRejectedError("insufficient platform balance")

    report = await dispatcher.run()

    assert report.failed == 1
    payout = await _payout_of(test_session, booking.id)
    assert payout.status == PayoutStatus.FAILED.value
    assert "insufficient" in payout.last_error


@pytest.mark.asyncio
async def test_ambiguous_transfer_is_looked_up_not_resent(
    dispatcher, settled_booking, payout_account, fake_provider, test_session
):
    """Test that an unknown transfer outcome is settled by lookup."""
    await payout_account()
    booking = await settled_booking()
    fake_provider.transfer_error = ProviderUnavailableError("timed out")
    fake_provider.transfer_lands_on_error = True

    report = await dispatcher.run()
    assert report.ambiguous == 1
    assert (await _payout_of(test_session, booking.id)).status == PayoutStatus.AMBIGUOUS.value

    fake_provider.transfer_error = None
    report = await dispatcher.run()

    assert report.resolved == 1
    assert len(fake_provider.transfer_calls) == 1
    assert (await _payout_of(test_session, booking.id)).status == PayoutStatus.TRANSFERRED.value


@pytest.mark.asyncio
async def test_ambiguous_transfer_never_received_fails(
    dispatcher, settled_booking, payout_account, fake_provider, test_session
):
    """Test that a transfer the provider never saw is failed, not retried."""
    await payout_account()
    booking = await settled_booking()
    fake_provider.transfer_error = ProviderUnavailableError("connection reset")

    await dispatcher.run()
    fake_provider.transfer_error = None
    report = await dispatcher.run()

    assert report.failed == 1
    assert len(fake_provider.transfer_calls) == 1
    assert (await _payout_of(test_session, booking.id)).status == PayoutStatus.FAILED.value


@pytest.mark.asyncio
async def test_disputed_booking_payout_is_blocked(
    dispatcher, settled_booking, payout_account, fake_provider, ledger, test_session
):
    """Test that a dispute filed before payout stops the transfer."""
    await payout_account()
    booking = await settled_booking()
    await _dispute(ledger, booking.id)

    report = await dispatcher.run()

    assert report.blocked == 1
    assert fake_provider.transfer_calls == []
    payout = await _payout_of(test_session, booking.id)
    assert payout.status == PayoutStatus.BLOCKED.value
    assert payout.reversal_reason == "disputed"


@pytest.mark.asyncio
async def test_full_refund_reverses_transferred_payout(
    dispatcher, settled_booking, payout_account, fake_provider, ledger, test_session
):
    """Test that a full refund after payout claws the transfer back once."""
    await payout_account()
    booking = await settled_booking()
    await dispatcher.run()

    await _refund_in_full(ledger, booking.id)
    assert (await _payout_of(test_session, booking.id)).status == PayoutStatus.REVERSAL_QUEUED.value

    report = await dispatcher.run()
    again = await dispatcher.run()

    assert report.reversed == 1
    assert not again
    assert len(fake_provider.reversal_calls) == 1
    payout = await _payout_of(test_session, booking.id)
    call = fake_provider.reversal_calls[0]
    assert call["transfer_id"] == payout.provider_transfer_id
    assert call["amount"] == payout.amount
    assert call["idempotency_key"] == f"payout-reversal-{payout.id}"
    assert payout.status == PayoutStatus.REVERSED.value
    assert payout.reversal_reason == "refunded"


@pytest.mark.asyncio
async def test_dispute_after_payout_reverses_transfer(
    dispatcher, settled_booking, payout_account, fake_provider, ledger, test_session
):
    """Test that a dispute on a paid-out booking queues the reversal."""
    await payout_account()
    booking = await settled_booking()
    await dispatcher.run()

    await _dispute(ledger, booking.id)
    report = await dispatcher.run()

    assert report.reversed == 1
    payout = await _payout_of(test_session, booking.id)
    assert payout.status == PayoutStatus.REVERSED.value
    assert payout.reversal_reason == "disputed"


@pytest.mark.asyncio
async def test_failed_reversal_is_retried_with_same_key(
    dispatcher, settled_booking, payout_account, fake_provider, ledger, test_session
):
    """Test that a reversal error leaves the reversal queued for the next run."""
    await payout_account()
    booking = await settled_booking()
    await dispatcher.run()
    await _refund_in_full(ledger, booking.id)
    fake_provider.reversal_error = ProviderUnavailableError("timed out")

    await dispatcher.run()
    payout = await _payout_of(test_session, booking.id)
    assert payout.status == PayoutStatus.REVERSAL_QUEUED.value
    assert payout.last_error

    fake_provider.reversal_error = None
    report = await dispatcher.run()

    assert report.reversed == 1
    keys = {call["idempotency_key"] for call in fake_provider.reversal_calls}
    assert keys == {f"payout-reversal-{payout.id}"}


@pytest.mark.asyncio
async def test_refund_during_in_flight_transfer_reverses_after_it_lands(
    dispatcher, settled_booking, payout_account, fake_provider, ledger, test_session
):
    """Test that a refund racing an unresolved transfer still reverses it."""
    await payout_account()
    booking = await settled_booking()
    fake_provider.transfer_error = ProviderUnavailableError("timed out")
    fake_provider.transfer_lands_on_error = True
    await dispatcher.run()

    await _refund_in_full(ledger, booking.id)
    payout = await _payout_of(test_session, booking.id)
    assert payout.status == PayoutStatus.AMBIGUOUS.value
    assert payout.reversal_reason == "refunded"

    fake_provider.transfer_error = None
    report = await dispatcher.run()

    assert report.resolved == 1
    assert report.reversed == 1
    assert (await _payout_of(test_session, booking.id)).status == PayoutStatus.REVERSED.value


@pytest.mark.asyncio
async def test_partial_refund_keeps_payout(
    dispatcher, settled_booking, payout_account, fake_provider, ledger, test_session
):
    """Test that refunding the deposit alone does not touch the host payout."""
    await payout_account()
    booking = await settled_booking()
    await dispatcher.run()

    booking = await ledger.get_booking(booking.id)
    event = PaymentEvent(
        type=LedgerEventType.CHARGE_REFUNDED,
        payment_intent_id=booking.payment_intent_id,
        amount_refunded=booking.deposit_amount,
    )
    await ledger.apply_payment_event(booking.id, event, booking.version)

    assert not await dispatcher.run()
    assert fake_provider.reversal_calls == []
    assert (await _payout_of(test_session, booking.id)).status == PayoutStatus.TRANSFERRED.value
