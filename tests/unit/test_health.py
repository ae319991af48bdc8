"""Unit tests for the health endpoint."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from httpx import ASGITransport, AsyncClient


@pytest.fixture
async def client():
    from src.main import app

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


async def test_all_backends_up(client):
    with (
        patch("src.api.routes.db_health_check", AsyncMock(return_value=True)),
        patch("src.api.routes.get_redis", AsyncMock(return_value=MagicMock())),
    ):
        response = await client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["redis"] == "healthy"
    assert "timestamp" in body
    assert response.headers["X-Correlation-Id"]


async def test_redis_down_is_degraded_not_unhealthy(client):
    with (
        patch("src.api.routes.db_health_check", AsyncMock(return_value=True)),
        patch("src.api.routes.get_redis", AsyncMock(return_value=None)),
        patch(
            "src.api.routes.get_settings",
            return_value=MagicMock(nonce_cache_backend="redis"),
        ),
    ):
        response = await client.get("/health")

    body = response.json()
    assert body["status"] == "healthy"
    assert body["redis"] == "unavailable"
    assert body["nonce_cache"] == "memory (fallback)"


async def test_database_down(client):
    with (
        patch("src.api.routes.db_health_check", AsyncMock(return_value=False)),
        patch("src.api.routes.get_redis", AsyncMock(return_value=MagicMock())),
    ):
        response = await client.get("/health")

    assert response.json()["status"] == "unhealthy"
    assert response.json()["database"] == "unhealthy"
