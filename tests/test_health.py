"""Probe endpoints."""

import pytest
from httpx import AsyncClient


@pytest.mark.asyncio
async def test_health(client: AsyncClient) -> None:
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


@pytest.mark.asyncio
async def test_readiness_checks_sql_and_redis(client: AsyncClient) -> None:
    data = (await client.get("/ready")).json()
    assert data["status"] == "ready"
    assert data["checks"] == {"database": "ok", "redis": "ok"}


@pytest.mark.asyncio
async def test_version(client: AsyncClient) -> None:
    data = (await client.get("/version")).json()
    assert data["version"] == "0.1.0"
    assert "environment" in data
