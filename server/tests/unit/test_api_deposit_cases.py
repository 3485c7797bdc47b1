"""API tests for the deposit case endpoints."""

from datetime import timedelta

import pytest

from rental_sync.core.clock import utcnow


@pytest.fixture
def completed_booking_id(ledger, create_booking, confirm_booking, clock):
    """Factory for a booking completed just now on the wall clock."""

    async def _completed():
        clock.now = utcnow() - timedelta(days=11)
        booking = await confirm_booking(await create_booking())
        clock.now = utcnow()
        result = await ledger.complete_if_ended(booking.id)
        assert result.completed
        return str(booking.id)

    return _completed


@pytest.mark.asyncio
async def test_host_files_and_operator_resolves(test_client, auth_headers, completed_booking_id):
    """Test the full claim lifecycle over HTTP."""
    booking_id = await completed_booking_id()

    filed = await test_client.post(
        "/v1/deposit-cases/file",
        json={"booking_id": booking_id, "amount": 25000, "reason": "Cracked windshield"},
        headers=auth_headers(user_id="host_1"),
    )
    assert filed.status_code == 201
    case = filed.json()
    assert case["status"] == "case_submitted"
    assert case["source"] == "host_claim"
    assert case["amount_claimed"] == 10000

    operator = auth_headers(user_id="ops_1", roles=("operator",))
    reviewed = await test_client.post("/v1/deposit-cases/review", json={"case_id": case["id"]}, headers=operator)
    assert reviewed.status_code == 200
    assert reviewed.json()["status"] == "under_review"

    resolved = await test_client.post(
        "/v1/deposit-cases/resolve",
        json={"case_id": case["id"], "resolution": "retained", "note": "Repair invoice attached"},
        headers=operator,
    )
    assert resolved.status_code == 200
    assert resolved.json()["status"] == "retained"
    assert resolved.json()["resolution_note"] == "Repair invoice attached"


@pytest.mark.asyncio
async def test_renter_cannot_file(test_client, auth_headers, completed_booking_id):
    """Test that only the host files against the deposit."""
    booking_id = await completed_booking_id()

    response = await test_client.post(
        "/v1/deposit-cases/file",
        json={"booking_id": booking_id, "amount": 1000, "reason": "Dent"},
        headers=auth_headers(user_id="renter_1"),
    )

    assert response.status_code == 403


@pytest.mark.asyncio
async def test_host_cannot_review(test_client, auth_headers, completed_booking_id):
    """Test that reviewing requires the operator role."""
    booking_id = await completed_booking_id()
    filed = await test_client.post(
        "/v1/deposit-cases/file",
        json={"booking_id": booking_id, "amount": 1000, "reason": "Dent"},
        headers=auth_headers(user_id="host_1"),
    )

    response = await test_client.post(
        "/v1/deposit-cases/review",
        json={"case_id": filed.json()["id"]},
        headers=auth_headers(user_id="host_1"),
    )

    assert response.status_code == 403


@pytest.mark.asyncio
async def test_file_on_pending_booking_is_conflict(test_client, auth_headers, create_booking, clock):
    """Test that claims on unfinished trips are refused."""
    clock.now = utcnow()
    booking = await create_booking()

    response = await test_client.post(
        "/v1/deposit-cases/file",
        json={"booking_id": str(booking.id), "amount": 1000, "reason": "Dent"},
        headers=auth_headers(user_id="host_1"),
    )

    assert response.status_code == 409
    assert response.json()["code"] == "INVALID_STATE"


@pytest.mark.asyncio
async def test_resolution_must_be_final(test_client, auth_headers):
    """Test that only retained and reversed are accepted as resolutions."""
    response = await test_client.post(
        "/v1/deposit-cases/resolve",
        json={"case_id": "8a1f4c1e-7a5d-4b7e-9f0a-2c3d4e5f6a7b", "resolution": "under_review"},
        headers=auth_headers(user_id="ops_1", roles=("operator",)),
    )

    assert response.status_code == 422
    assert response.json()["violations"][0]["path"].endswith("resolution")


@pytest.mark.asyncio
async def test_unknown_case_not_found(test_client, auth_headers):
    """Test that malformed and missing case ids are 404."""
    operator = auth_headers(user_id="ops_1", roles=("operator",))

    malformed = await test_client.post("/v1/deposit-cases/review", json={"case_id": "nope"}, headers=operator)
    missing = await test_client.post(
        "/v1/deposit-cases/review",
        json={"case_id": "8a1f4c1e-7a5d-4b7e-9f0a-2c3d4e5f6a7b"},
        headers=operator,
    )

    assert malformed.status_code == 404
    assert missing.status_code == 404
