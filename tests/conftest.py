"""Shared test fixtures."""

from __future__ import annotations

import os
from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import fakeredis.aioredis
import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

os.environ.setdefault("SEASONHUB_JWT_SECRET", "test-jwt-secret-with-at-least-32-bytes")
os.environ.setdefault("SEASONHUB_ADMIN_API_KEY", "test-admin-key")
os.environ.setdefault("SEASONHUB_SIGNING_MODE", "soft")
os.environ.setdefault("SEASONHUB_SIGNING_SECRET", "test-signing-secret")
os.environ.setdefault("SEASONHUB_LOG_FORMAT", "console")

from seasonhub.auth.jwt import create_access_token, reset_keys  # noqa: E402
from seasonhub.config import Settings, get_settings  # noqa: E402
from seasonhub.database import close_db, create_tables, get_session, init_db  # noqa: E402
from seasonhub.dependencies import get_clock, get_provider_transport  # noqa: E402
from seasonhub.identity.models import Account, ProviderIdentity, ProviderLink  # noqa: E402
from seasonhub.identity.resolver import IdentityResolver  # noqa: E402
from seasonhub.identity.scan import invalidate_scan_cache  # noqa: E402
from seasonhub.identity.store import AccountStore  # noqa: E402
from seasonhub.leaderboard.service import LeaderboardStore  # noqa: E402
from seasonhub.ledger.service import ProgressionLedger  # noqa: E402
from seasonhub.redis_client import set_redis  # noqa: E402

get_settings.cache_clear()
reset_keys()

START = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


class FixedClock:
    """Manually advanced UTC clock."""

    def __init__(self, now: datetime) -> None:
        self.current = now

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> None:
        self.current += timedelta(**kwargs)

    def set(self, now: datetime) -> None:
        self.current = now


class FakeProviders:
    """In-memory Discord + Patreon APIs keyed by bearer token."""

    def __init__(self) -> None:
        self.discord: dict[str, dict[str, Any]] = {}
        self.patreon: dict[str, dict[str, Any]] = {}
        self.transport = httpx.MockTransport(self._handle)

    def add_discord(
        self,
        token: str,
        user_id: str,
        username: str = "discord_user",
        email: str | None = None,
        verified: bool = True,
    ) -> None:
        self.discord[token] = {
            "id": user_id,
            "username": username,
            "global_name": None,
            "email": email,
            "verified": verified,
        }

    def add_patreon(
        self,
        token: str,
        user_id: str,
        full_name: str = "Patreon User",
        email: str | None = None,
        verified: bool = True,
        cents: int = 0,
    ) -> None:
        included = []
        if cents:
            included.append({
                "type": "member",
                "id": f"m-{user_id}",
                "attributes": {"patron_status": "active_patron", "currently_entitled_amount_cents": cents},
            })
        self.patreon[token] = {
            "data": {
                "type": "user",
                "id": user_id,
                "attributes": {"full_name": full_name, "email": email, "is_email_verified": verified},
            },
            "included": included,
        }

    def _handle(self, request: httpx.Request) -> httpx.Response:
        token = request.headers.get("Authorization", "").removeprefix("Bearer ")
        if request.url.path.endswith("/users/@me"):
            payload = self.discord.get(token)
        elif request.url.path.endswith("/identity"):
            payload = self.patreon.get(token)
        else:
            return httpx.Response(404, json={"message": "unknown route"})
        if payload is None:
            return httpx.Response(401, json={"message": "401: Unauthorized"})
        return httpx.Response(200, json=payload)


@pytest.fixture(autouse=True)
def _fresh_scan_cache() -> None:
    invalidate_scan_cache()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(START)


@pytest.fixture
def settings() -> Settings:
    return get_settings()


@pytest.fixture
def redis() -> fakeredis.aioredis.FakeRedis:
    """Isolated in-memory Redis per test."""
    return fakeredis.aioredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def store(redis) -> AccountStore:
    return AccountStore(redis)


@pytest.fixture
def leaderboard(redis, clock) -> LeaderboardStore:
    return LeaderboardStore(redis, clock=clock, online_window_seconds=60)


@pytest.fixture
def resolver(redis, settings, clock) -> IdentityResolver:
    return IdentityResolver(redis, settings, clock=clock)


@pytest.fixture
def ledger(redis, settings, clock, leaderboard) -> ProgressionLedger:
    return ProgressionLedger(redis, settings, clock=clock, leaderboard=leaderboard)


@pytest.fixture
def make_account(store, clock) -> Callable[..., Awaitable[Account]]:
    """Persist an account record directly (no indexes)."""

    async def _make(account_id: str = "acct-1", provider_id: str | None = "d-1", **fields: Any) -> Account:
        now = clock.now()
        links = {}
        if provider_id:
            links["discord"] = ProviderLink(
                provider="discord", provider_id=provider_id, account_id=account_id, linked_at=now
            )
        data: dict[str, Any] = {
            "id": account_id,
            "display_name": f"user_{account_id}",
            "links": links,
            "season": "2026-01",
            "created_at": now,
            "updated_at": now,
        }
        data.update(fields)
        account = Account(**data)
        await store.save(account)
        return account

    return _make


def identity(provider: str, provider_id: str, email: str | None = None, **kwargs: Any) -> ProviderIdentity:
    return ProviderIdentity(
        provider=provider, provider_id=provider_id, email=email, verified=email is not None, **kwargs
    )


@pytest.fixture
def provider_identity() -> Callable[..., ProviderIdentity]:
    return identity


@pytest.fixture
def providers() -> FakeProviders:
    return FakeProviders()


@pytest_asyncio.fixture
async def db_session(tmp_path) -> AsyncGenerator[AsyncSession, None]:
    """SQLite-backed session with the snapshot table created."""
    await init_db(f"sqlite+aiosqlite:///{tmp_path / 'seasonhub.db'}")
    await create_tables()
    async for session in get_session():
        yield session
        break
    await close_db()


@pytest_asyncio.fixture
async def client(redis, clock, providers, tmp_path) -> AsyncGenerator[AsyncClient, None]:
    """HTTP test client over fakeredis and a temporary SQLite database."""
    from seasonhub.main import create_app

    await init_db(f"sqlite+aiosqlite:///{tmp_path / 'api.db'}")
    await create_tables()
    set_redis(redis)

    app = create_app()
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_provider_transport] = lambda: providers.transport

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    set_redis(None)
    await close_db()


@pytest.fixture
def auth_headers() -> Callable[[str], dict[str, str]]:
    def _headers(account_id: str, provider: str = "discord") -> dict[str, str]:
        return {"Authorization": f"Bearer {create_access_token(account_id, provider)}"}

    return _headers
