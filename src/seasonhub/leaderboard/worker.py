"""Season archive arq worker.

At the start of each month the previous season's leaderboard is exported
to ``season_snapshots`` and its sorted set is given a retention TTL.

Import path for arq CLI: arq seasonhub.leaderboard.worker.SeasonWorkerSettings
"""

from __future__ import annotations

import logging

from arq import cron
from arq.connections import RedisSettings

from seasonhub.clock import SystemClock, get_current_season, get_previous_season
from seasonhub.config import get_settings
from seasonhub.database import close_db, create_tables, get_session, init_db
from seasonhub.leaderboard.service import LeaderboardStore
from seasonhub.redis_client import close_redis, get_redis, init_redis

logger = logging.getLogger(__name__)


async def archive_previous_season(ctx: dict) -> int:
    """Export last month's leaderboard and let its Redis key expire."""
    settings = get_settings()
    clock = ctx.get("clock") or SystemClock()
    season = get_previous_season(get_current_season(clock))
    store = LeaderboardStore(get_redis(), clock=clock, online_window_seconds=settings.online_window_seconds)

    async for db in get_session():
        exported = await store.archive_season(
            season,
            db,
            retention_seconds=settings.leaderboard_retention_days * 86400,
        )
        break
    else:
        msg = "Failed to get database session"
        raise RuntimeError(msg)

    logger.info("Season %s archived: %d entries", season, exported)
    return exported


async def season_worker_startup(ctx: dict) -> None:
    """Initialize Redis + DB connections on worker startup."""
    settings = get_settings()
    await init_db(settings.database_url)
    await create_tables()
    await init_redis(settings.redis_url)
    logger.info("Season worker started")


async def season_worker_shutdown(ctx: dict) -> None:
    """Clean up on worker shutdown."""
    await close_redis()
    await close_db()
    logger.info("Season worker shut down")


class SeasonWorkerSettings:
    """arq worker settings for season archiving."""

    functions = [archive_previous_season]
    cron_jobs = [cron(archive_previous_season, day=1, hour=0, minute=5)]  # 00:05 UTC on the 1st
    on_startup = season_worker_startup
    on_shutdown = season_worker_shutdown
    redis_settings = RedisSettings.from_dsn(get_settings().redis_url)
    max_jobs = 1
    job_timeout = 600
