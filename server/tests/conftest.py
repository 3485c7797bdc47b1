"""Test configuration and fixtures."""

import hashlib
import hmac
import itertools
import json
import os
import time
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Optional
from uuid import uuid4

# Settings are read at import time
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("BEARER_TOKEN_SECRET", "test-bearer-secret")
os.environ.setdefault("ENABLE_BACKGROUND_WORKERS", "false")

import jwt  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from rental_sync.core.actor import Actor  # noqa: E402
from rental_sync.core.config import settings  # noqa: E402
from rental_sync.core.database import Base  # noqa: E402
from rental_sync.core.dependencies import get_db, get_payment_provider  # noqa: E402
from rental_sync.core.exceptions import ProviderRejectedError  # noqa: E402
from rental_sync.models import *  # noqa: E402,F403 - Import all models
from rental_sync.ledger import LedgerEventType, PaymentEvent  # noqa: E402
from rental_sync.services.booking_ledger import BookingLedger  # noqa: E402
from rental_sync.services.payment_provider import (  # noqa: E402
    ProviderCheckoutSession,
    ProviderCheckoutState,
    ProviderRefund,
    ProviderTransfer,
    ProviderTransferReversal,
)

# Test database URL (in-memory SQLite for speed)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

WEBHOOK_SECRET = settings.stripe_webhook_secret


class FrozenClock:
    """Clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakePaymentProvider:
    """In-memory payment provider recording every call."""

    def __init__(self):
        self.sessions: dict[str, ProviderCheckoutState] = {}
        self.refunds: list[ProviderRefund] = []
        self.refund_calls: list[dict] = []
        self.expired: list[str] = []
        self.retrieve_error: Optional[Exception] = None
        self.refund_error: Optional[Exception] = None
        # Refund lands at the provider even though the call reports an error
        self.refund_lands_on_error = False
        self.transfers: list[tuple[str, ProviderTransfer]] = []
        self.transfer_calls: list[dict] = []
        self.reversals: list[ProviderTransferReversal] = []
        self.reversal_calls: list[dict] = []
        self.transfer_error: Optional[Exception] = None
        self.transfer_lands_on_error = False
        self.reversal_error: Optional[Exception] = None
        self._ids = itertools.count(1)

    async def create_checkout_session(self, booking_id, amount, description, expires_at):
        session_id = f"cs_test_{next(self._ids)}"
        self.sessions[session_id] = ProviderCheckoutState(
            id=session_id,
            status="open",
            payment_status="unpaid",
            amount_total=amount,
            booking_id=booking_id,
        )
        return ProviderCheckoutSession(
            id=session_id,
            url=f"https://checkout.stripe.test/{session_id}",
            expires_at=expires_at,
        )

    async def expire_checkout_session(self, session_id):
        state = self.sessions.get(session_id)
        if state is None or state.status != "open":
            return False
        self.sessions[session_id] = replace(state, status="expired")
        self.expired.append(session_id)
        return True

    async def retrieve_checkout_session(self, session_id):
        if self.retrieve_error is not None:
            raise self.retrieve_error
        if session_id not in self.sessions:
            raise ProviderRejectedError(f"No such checkout session: {session_id}")
        return self.sessions[session_id]

    def pay(self, session_id: str, payment_intent_id: str = "pi_test_1") -> None:
        """Complete a session as if the renter paid."""
        self.sessions[session_id] = replace(
            self.sessions[session_id],
            status="complete",
            payment_status="paid",
            payment_intent_id=payment_intent_id,
        )

    def lapse(self, session_id: str) -> None:
        self.sessions[session_id] = replace(self.sessions[session_id], status="expired")

    async def create_refund(self, payment_intent_id, amount, idempotency_key, metadata):
        self.refund_calls.append({
            "payment_intent_id": payment_intent_id,
            "amount": amount,
            "idempotency_key": idempotency_key,
            "metadata": dict(metadata),
        })
        refund = ProviderRefund(
            id=f"re_test_{next(self._ids)}",
            status="pending",
            amount=amount,
            payment_intent_id=payment_intent_id,
            metadata=dict(metadata),
        )
        if self.refund_error is not None:
            if self.refund_lands_on_error:
                self.refunds.append(refund)
            raise self.refund_error
        self.refunds.append(refund)
        return refund

    async def find_refund(self, payment_intent_id, refund_request_id):
        for refund in self.refunds:
            if (
                refund.payment_intent_id == payment_intent_id
                and refund.metadata.get("refund_request_id") == refund_request_id
            ):
                return refund
        return None

    async def create_transfer(
        self, amount, destination_account_id, idempotency_key, transfer_group, metadata, source_charge_id=None
    ):
        self.transfer_calls.append({
            "amount": amount,
            "destination_account_id": destination_account_id,
            "idempotency_key": idempotency_key,
            "transfer_group": transfer_group,
            "metadata": dict(metadata),
            "source_charge_id": source_charge_id,
        })
        transfer = ProviderTransfer(
            id=f"tr_test_{next(self._ids)}",
            amount=amount,
            destination=destination_account_id,
            metadata=dict(metadata),
        )
        if self.transfer_error is not None:
            if self.transfer_lands_on_error:
                self.transfers.append((transfer_group, transfer))
            raise self.transfer_error
        self.transfers.append((transfer_group, transfer))
        return transfer

    async def find_transfer(self, transfer_group, payout_id):
        for group, transfer in self.transfers:
            if group == transfer_group and transfer.metadata.get("payout_id") == payout_id:
                return transfer
        return None

    async def reverse_transfer(self, transfer_id, amount, idempotency_key, metadata):
        self.reversal_calls.append({
            "transfer_id": transfer_id,
            "amount": amount,
            "idempotency_key": idempotency_key,
            "metadata": dict(metadata),
        })
        if self.reversal_error is not None:
            raise self.reversal_error
        reversal = ProviderTransferReversal(id=f"trr_test_{next(self._ids)}", amount=amount, transfer_id=transfer_id)
        self.reversals.append(reversal)
        return reversal


def sign(payload: str, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header for a payload."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def make_token(user_id: str, roles: tuple[str, ...] = ()) -> str:
    payload = {"sub": user_id, "roles": list(roles), "exp": int(time.time()) + 3600}
    return jwt.encode(payload, settings.bearer_token_secret, algorithm="HS256")


@pytest_asyncio.fixture(scope="function")
async def test_engine():
    """Create a test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    # Create tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    # Drop tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture(scope="function")
async def test_session(session_factory):
    """Create a test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock():
    return FrozenClock(datetime(2026, 6, 1, 12, 0, 0))


@pytest.fixture
def fake_provider():
    return FakePaymentProvider()


@pytest.fixture
def ledger(test_session, fake_provider, clock):
    return BookingLedger(test_session, provider=fake_provider, clock=clock)


@pytest.fixture
def renter():
    return Actor(user_id="renter_1")


@pytest.fixture
def host():
    return Actor(user_id="host_1")


@pytest.fixture
def operator():
    return Actor(user_id="ops_1", roles=("operator",))


@pytest.fixture
def create_booking(ledger, clock):
    """Factory creating pending bookings relative to the frozen clock."""

    async def _create(
        car_id: str = "car_1",
        starts_in: timedelta = timedelta(days=7),
        days: int = 3,
        amount_total: int = 30000,
        deposit_amount: int = 10000,
        renter_id: str = "renter_1",
        host_id: str = "host_1",
    ):
        starts_at = clock() + starts_in
        return await ledger.create_pending_booking(
            car_id=car_id,
            renter_id=renter_id,
            host_id=host_id,
            starts_at=starts_at,
            ends_at=starts_at + timedelta(days=days),
            amount_total=amount_total,
            deposit_amount=deposit_amount,
        )

    return _create


@pytest.fixture
def confirm_booking(ledger):
    """Open checkout for a booking and apply its paid completion."""

    async def _confirm(booking, payment_intent_id: str = "pi_test_1"):
        session = await ledger.open_checkout_session(booking.id)
        current = await ledger.get_booking(booking.id)
        event = PaymentEvent(
            type=LedgerEventType.CHECKOUT_COMPLETED,
            provider_session_id=session.provider_session_id,
            payment_intent_id=payment_intent_id,
            amount=current.amount_total,
        )
        await ledger.apply_payment_event(booking.id, event, current.version)
        return await ledger.get_booking(booking.id)

    return _confirm


@pytest.fixture
def settled_booking(ledger, create_booking, confirm_booking, clock):
    """Factory for a captured booking whose trip has completed."""

    async def _settled(**booking_kwargs):
        booking = await confirm_booking(await create_booking(**booking_kwargs))
        capture = PaymentEvent(
            type=LedgerEventType.PAYMENT_SUCCEEDED,
            payment_intent_id=booking.payment_intent_id,
            amount=booking.amount_total,
        )
        await ledger.apply_payment_event(booking.id, capture, booking.version)
        clock.advance(days=11)
        result = await ledger.complete_if_ended(booking.id)
        assert result.completed
        return result.booking

    return _settled


@pytest.fixture
def sign_payload():
    """Stripe-Signature header builder."""
    return sign


@pytest.fixture
def webhook_event():
    """Factory building signed webhook deliveries: returns (body, signature header)."""

    def _build(event_type: str, obj: dict, event_id: Optional[str] = None, secret: str = WEBHOOK_SECRET):
        body = json.dumps({
            "id": event_id or f"evt_{uuid4().hex[:24]}",
            "object": "event",
            "type": event_type,
            "created": int(time.time()),
            "livemode": False,
            "api_version": "2024-06-20",
            "data": {"object": obj},
        })
        return body.encode("utf-8"), sign(body, secret)

    return _build


@pytest.fixture
def auth_headers():
    def _headers(user_id: str = "renter_1", roles: tuple[str, ...] = (), idempotency_key: Optional[str] = None):
        headers = {"Authorization": f"Bearer {make_token(user_id, roles)}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    return _headers


@pytest_asyncio.fixture(scope="function")
async def test_app(test_session, fake_provider):
    """Create a test FastAPI application."""
    from fastapi import FastAPI

    from rental_sync.main import include_routers, register_exception_handlers

    # Create a simplified test app without lifespan
    app = FastAPI(
        title="Rental Sync API (Test)",
        description="Test version of the API",
        version="1.0.0-test",
    )

    register_exception_handlers(app)
    include_routers(app)

    # Override database and provider dependencies
    async def override_get_db():
        yield test_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_provider] = lambda: fake_provider

    yield app

    # Clean up
    app.dependency_overrides.clear()


@pytest_asyncio.fixture(scope="function")
async def test_client(test_app):
    """Create a test HTTP client."""
    transport = ASGITransport(app=test_app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
