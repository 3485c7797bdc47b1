"""Unit tests for health endpoints."""

import pytest

from rental_sync.core.config import settings
from rental_sync.routers import health


@pytest.mark.asyncio
async def test_health_check(test_client):
    response = await test_client.get("/health")
    assert response.status_code == 200
    assert response.json() == {
        "status": "healthy",
        "service": "rental-sync",
        "version": "1.0.0",
        "environment": "test",
    }


@pytest.mark.asyncio
async def test_ready_check(test_client):
    """Test that a configured instance with workers disabled is ready."""
    response = await test_client.get("/ready")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ready"
    assert data["checks"] == {"database": "ok", "webhook_secret": "ok", "workers": "disabled"}


@pytest.mark.asyncio
async def test_not_ready_without_webhook_secret(test_client, monkeypatch):
    monkeypatch.setattr(health, "settings", settings.model_copy(update={"stripe_webhook_secret": ""}))

    response = await test_client.get("/ready")

    assert response.status_code == 503
    assert response.json()["checks"]["webhook_secret"] == "missing"


@pytest.mark.asyncio
async def test_not_ready_when_workers_stopped(test_client, monkeypatch):
    """Test that enabled workers which are not running fail readiness."""
    monkeypatch.setattr(health, "settings", settings.model_copy(update={"enable_background_workers": True}))
    monkeypatch.setattr(health.worker_manager, "get_worker_status", lambda: {"refunds": False})

    response = await test_client.get("/ready")

    assert response.status_code == 503
    data = response.json()
    assert data["status"] == "not_ready"
    assert data["checks"]["workers"] == "stopped"


@pytest.mark.asyncio
async def test_info_endpoint(test_client):
    response = await test_client.get("/info")
    assert response.status_code == 200
    data = response.json()
    assert data["endpoints"]["webhooks"] == "/v1/webhooks/stripe"
    assert data["features"]["background_workers"] is False
