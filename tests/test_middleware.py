"""Request id, rate limiting, CORS and error shape."""

import pytest
from httpx import AsyncClient


@pytest.mark.asyncio
async def test_request_id_generated(client: AsyncClient) -> None:
    response = await client.get("/health")
    request_id = response.headers["x-request-id"]
    assert len(request_id) == 32
    int(request_id, 16)


@pytest.mark.asyncio
async def test_request_id_echoed(client: AsyncClient) -> None:
    response = await client.get("/health", headers={"X-Request-Id": "trace-42"})
    assert response.headers["x-request-id"] == "trace-42"


@pytest.mark.asyncio
async def test_rate_limit_headers(client: AsyncClient) -> None:
    response = await client.get("/v3/leaderboard")
    assert response.headers["x-ratelimit-limit"] == "100"
    assert response.headers["x-ratelimit-remaining"] == "99"


@pytest.mark.asyncio
async def test_api_bucket_exhausted(client: AsyncClient) -> None:
    for _ in range(100):
        await client.get("/v3/leaderboard")
    response = await client.get("/v3/leaderboard")
    assert response.status_code == 429
    assert response.headers["retry-after"] == "60"
    assert response.json()["error"] == "rate_limited"


@pytest.mark.asyncio
async def test_auth_bucket_is_tighter(client: AsyncClient) -> None:
    for _ in range(20):
        response = await client.post("/v2/auth/discord", json={"access_token": "unknown"})
        assert response.status_code == 401
    response = await client.post("/v2/auth/discord", json={"access_token": "unknown"})
    assert response.status_code == 429
    # The general bucket is untouched
    assert (await client.get("/v3/leaderboard")).status_code == 200


@pytest.mark.asyncio
async def test_probes_exempt(client: AsyncClient) -> None:
    for _ in range(150):
        assert (await client.get("/health")).status_code == 200
    assert "x-ratelimit-limit" not in (await client.get("/version")).headers


@pytest.mark.asyncio
async def test_cors_preflight(client: AsyncClient) -> None:
    response = await client.options(
        "/v2/user/sync",
        headers={"Origin": "http://localhost:5173", "Access-Control-Request-Method": "POST"},
    )
    assert response.headers["access-control-allow-origin"] == "http://localhost:5173"


@pytest.mark.asyncio
async def test_unknown_path_is_json(client: AsyncClient) -> None:
    response = await client.get("/no-such-route")
    assert response.status_code == 404
    assert response.json() == {"detail": "Not Found", "error": "not_found"}


@pytest.mark.asyncio
async def test_request_validation_is_json(client: AsyncClient) -> None:
    response = await client.get("/v3/leaderboard", params={"limit": 0})
    assert response.status_code == 422
    assert response.json()["error"] == "validation"
