"""Unit tests for the idempotency service."""

import pytest
from sqlalchemy import func, select

from rental_sync.models import IdempotencyRecord
from rental_sync.services.idempotency_service import (
    IdempotencyMismatchError,
    IdempotencyService,
    request_fingerprint,
)
from rental_sync.workers.lifecycle_worker import LifecycleWorker

SCOPE = {"idempotency_key": "key-1", "operation": "booking.create", "actor_id": "renter_1"}
BODY = {"car_id": "car_1", "amount_total": 30000}


@pytest.fixture
def idempotency(test_session, clock):
    return IdempotencyService(test_session, clock=clock)


def test_fingerprint_ignores_key_order():
    assert request_fingerprint({"a": 1, "b": 2}) == request_fingerprint({"b": 2, "a": 1})
    assert request_fingerprint({"a": 1}) != request_fingerprint({"a": 2})


@pytest.mark.asyncio
async def test_lookup_replays_stored_response(idempotency):
    """Test that a stored response comes back unchanged."""
    assert await idempotency.lookup(request_body=BODY, **SCOPE) is None

    await idempotency.remember(request_body=BODY, status_code=201, response_body={"id": "b1"}, **SCOPE)

    assert await idempotency.lookup(request_body=BODY, **SCOPE) == (201, {"id": "b1"})


@pytest.mark.asyncio
async def test_lookup_rejects_different_body(idempotency):
    await idempotency.remember(request_body=BODY, status_code=201, response_body={"id": "b1"}, **SCOPE)

    with pytest.raises(IdempotencyMismatchError) as exc_info:
        await idempotency.lookup(request_body={**BODY, "amount_total": 1}, **SCOPE)

    assert exc_info.value.problem_details["code"] == "IDEMPOTENCY_KEY_MISMATCH"
    assert exc_info.value.problem_details["operation"] == "booking.create"


@pytest.mark.asyncio
async def test_keys_are_scoped_by_actor_and_operation(idempotency):
    await idempotency.remember(request_body=BODY, status_code=201, response_body={"id": "b1"}, **SCOPE)

    assert await idempotency.lookup(request_body=BODY, **{**SCOPE, "actor_id": "renter_2"}) is None
    assert await idempotency.lookup(request_body=BODY, **{**SCOPE, "operation": "booking.cancel"}) is None


@pytest.mark.asyncio
async def test_second_remember_keeps_first_response(idempotency, test_session):
    await idempotency.remember(request_body=BODY, status_code=201, response_body={"id": "b1"}, **SCOPE)
    await idempotency.remember(request_body=BODY, status_code=201, response_body={"id": "b2"}, **SCOPE)

    assert await idempotency.lookup(request_body=BODY, **SCOPE) == (201, {"id": "b1"})
    count = await test_session.scalar(select(func.count()).select_from(IdempotencyRecord))
    assert count == 1


@pytest.mark.asyncio
async def test_expired_records_are_not_replayed(idempotency, clock):
    await idempotency.remember(request_body=BODY, status_code=201, response_body={"id": "b1"}, **SCOPE)

    clock.advance(hours=idempotency.settings.idempotency_ttl_hours, seconds=1)

    assert await idempotency.lookup(request_body=BODY, **SCOPE) is None
    assert await idempotency.purge_expired() == 1
    assert await idempotency.purge_expired() == 0


@pytest.mark.asyncio
async def test_lifecycle_worker_purges_expired_records(session_factory, test_session):
    """Test that the lifecycle pass drops records past their retention."""
    stale = IdempotencyService(test_session)
    await stale.remember(request_body=BODY, status_code=201, response_body={"id": "b1"}, **SCOPE)
    await test_session.execute(
        IdempotencyRecord.__table__.update().values(expires_at=IdempotencyRecord.created_at)
    )
    await test_session.commit()

    await LifecycleWorker(session_factory=session_factory).process()

    count = await test_session.scalar(select(func.count()).select_from(IdempotencyRecord))
    assert count == 0
