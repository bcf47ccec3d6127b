"""Shared FastAPI dependencies.

Services are cheap to build, so each request gets fresh instances over the
shared Redis pool. Tests swap the clock through ``dependency_overrides``.
"""

from fastapi import Depends
from httpx import AsyncBaseTransport
from redis.asyncio import Redis

from seasonhub.clock import Clock, SystemClock
from seasonhub.config import get_settings
from seasonhub.database import get_session as _get_session
from seasonhub.identity.policy import policy_from_settings
from seasonhub.identity.resolver import IdentityResolver
from seasonhub.leaderboard.service import LeaderboardStore
from seasonhub.ledger.admin import LedgerAdmin
from seasonhub.ledger.service import ProgressionLedger
from seasonhub.redis_client import get_redis

get_db = _get_session

_system_clock = SystemClock()


def get_clock() -> Clock:
    return _system_clock


def get_leaderboard(
    redis: Redis = Depends(get_redis),  # noqa: B008
    clock: Clock = Depends(get_clock),  # noqa: B008
) -> LeaderboardStore:
    return LeaderboardStore(redis, clock=clock, online_window_seconds=get_settings().online_window_seconds)


def get_resolver(
    redis: Redis = Depends(get_redis),  # noqa: B008
    clock: Clock = Depends(get_clock),  # noqa: B008
) -> IdentityResolver:
    settings = get_settings()
    return IdentityResolver(redis, settings, tier_policy=policy_from_settings(settings), clock=clock)


def get_ledger(
    redis: Redis = Depends(get_redis),  # noqa: B008
    clock: Clock = Depends(get_clock),  # noqa: B008
    leaderboard: LeaderboardStore = Depends(get_leaderboard),  # noqa: B008
) -> ProgressionLedger:
    return ProgressionLedger(redis, get_settings(), clock=clock, leaderboard=leaderboard)


def get_admin(ledger: ProgressionLedger = Depends(get_ledger)) -> LedgerAdmin:  # noqa: B008
    return LedgerAdmin(ledger)


def get_provider_transport() -> AsyncBaseTransport | None:
    """HTTP transport for identity provider calls; None means the real network."""
    return None
