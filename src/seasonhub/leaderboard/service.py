"""Leaderboard store: one Redis sorted set per season.

Member = account id, score = current-season XP. The ledger writes the
score on every sync; the set is a derived index, so readers drop members
whose account no longer exists. SQL only receives exported snapshots.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

import structlog
from redis.asyncio import Redis
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from seasonhub.clock import Clock, SystemClock
from seasonhub.db.models import SeasonSnapshot
from seasonhub.identity.models import Account
from seasonhub.identity.store import AccountStore

logger = structlog.get_logger()


def leaderboard_key(season: str) -> str:
    """Redis sorted set key for a season leaderboard."""
    return f"leaderboard:season:{season}"


class LeaderboardStore:
    """Ranked queries, enrichment and export for season leaderboards."""

    def __init__(
        self,
        redis: Redis,
        *,
        clock: Clock | None = None,
        online_window_seconds: int = 60,
    ) -> None:
        self.redis = redis
        self.clock = clock or SystemClock()
        self.online_window_seconds = online_window_seconds
        self.accounts = AccountStore(redis)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def upsert(self, season: str, account_id: str, score: float) -> None:
        await self.redis.zadd(leaderboard_key(season), {account_id: score})

    async def move(self, old_season: str, new_season: str, account_id: str, score: float) -> None:
        """Take an account off one season's board and place it on another."""
        pipe = self.redis.pipeline()
        pipe.zrem(leaderboard_key(old_season), account_id)
        pipe.zadd(leaderboard_key(new_season), {account_id: score})
        await pipe.execute()

    async def remove(self, season: str, account_id: str) -> None:
        await self.redis.zrem(leaderboard_key(season), account_id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def range_by_rank(
        self,
        season: str,
        offset: int = 0,
        limit: int = 50,
        descending: bool = True,
    ) -> list[tuple[str, float]]:
        if limit <= 0:
            return []
        start, end = offset, offset + limit - 1
        key = leaderboard_key(season)
        if descending:
            entries = await self.redis.zrevrange(key, start, end, withscores=True)
        else:
            entries = await self.redis.zrange(key, start, end, withscores=True)
        return [(member, float(score)) for member, score in entries]

    async def range_by_score(
        self,
        season: str,
        min_score: float,
        max_score: float,
        offset: int = 0,
        limit: int = 50,
        descending: bool = True,
    ) -> list[tuple[str, float]]:
        key = leaderboard_key(season)
        if descending:
            entries = await self.redis.zrevrangebyscore(
                key, max_score, min_score, start=offset, num=limit, withscores=True
            )
        else:
            entries = await self.redis.zrangebyscore(
                key, min_score, max_score, start=offset, num=limit, withscores=True
            )
        return [(member, float(score)) for member, score in entries]

    async def rank_of(self, season: str, account_id: str, descending: bool = True) -> int | None:
        """1-based rank, or None when the account is not on the board."""
        key = leaderboard_key(season)
        rank = await (self.redis.zrevrank(key, account_id) if descending else self.redis.zrank(key, account_id))
        return None if rank is None else rank + 1

    async def score_of(self, season: str, account_id: str) -> float | None:
        score = await self.redis.zscore(leaderboard_key(season), account_id)
        return None if score is None else float(score)

    async def cardinality(self, season: str) -> int:
        return int(await self.redis.zcard(leaderboard_key(season)))

    # ------------------------------------------------------------------
    # Enrichment
    # ------------------------------------------------------------------

    def is_online(self, account: Account, now: datetime) -> bool:
        if account.settings.get("show_online_status") is False:
            return False
        if account.last_seen is None:
            return False
        return now - account.last_seen <= timedelta(seconds=self.online_window_seconds)

    @staticmethod
    def public_name(account: Account) -> str | None:
        """Provider-sourced names are never shown publicly."""
        if account.name_source == "provider":
            return None
        return account.display_name

    async def enrich(
        self,
        season: str,
        entries: list[tuple[str, float]],
        first_rank: int,
        viewer_id: str | None = None,
    ) -> list[dict[str, Any]]:
        """Attach profile data to ranked members; members whose account is gone are removed."""
        accounts = await self.accounts.get_many([member for member, _ in entries])
        now = self.clock.now()

        missing = [member for member, _ in entries if member not in accounts]
        if missing:
            await self.redis.zrem(leaderboard_key(season), *missing)
            logger.info("leaderboard_orphans_removed", season=season, count=len(missing))

        results: list[dict[str, Any]] = []
        rank = first_rank
        for member, score in entries:
            account = accounts.get(member)
            if account is None:
                continue
            results.append({
                "rank": rank,
                "account_id": member,
                "display_name": self.public_name(account),
                "xp": int(score),
                "level": account.level,
                "highest_level_ever": account.highest_level_ever,
                "is_legacy_og": account.is_legacy_og,
                "subscription_tier": account.effective_tier,
                "is_online": self.is_online(account, now),
                "is_current_user": member == viewer_id if viewer_id else False,
            })
            rank += 1
        return results

    async def get_page(
        self,
        season: str,
        offset: int = 0,
        limit: int = 50,
        viewer_id: str | None = None,
    ) -> dict[str, Any]:
        """Ranked, enriched page of a season leaderboard."""
        entries = await self.range_by_rank(season, offset, limit)
        results = await self.enrich(season, entries, offset + 1, viewer_id) if entries else []
        total = await self.cardinality(season)
        online = sum(1 for entry in results if entry["is_online"])
        return {
            "season": season,
            "entries": results,
            "total": total,
            "online_count": online,
            "offset": offset,
            "limit": limit,
        }

    async def get_rank(self, season: str, account_id: str) -> dict[str, Any]:
        """A single account's standing."""
        rank = await self.rank_of(season, account_id)
        score = await self.score_of(season, account_id)
        total = await self.cardinality(season)

        if rank is None:
            return {"season": season, "rank": 0, "xp": 0, "total": total, "percentile": 0}

        return {
            "season": season,
            "rank": rank,
            "xp": int(score or 0),
            "total": total,
            "percentile": round(100 - (rank / total * 100), 2) if total > 0 else 0,
        }

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    async def snapshot_export(self, season: str, db: AsyncSession | None = None) -> list[dict[str, Any]]:
        """Full ranked export of a season; persisted to ``season_snapshots`` when a session is given."""
        entries = await self.range_by_rank(season, 0, await self.cardinality(season))
        accounts = await self.accounts.get_many([member for member, _ in entries])

        rows: list[dict[str, Any]] = []
        for rank_offset, (member, score) in enumerate(entries):
            account = accounts.get(member)
            rows.append({
                "season": season,
                "account_id": member,
                "rank": rank_offset + 1,
                "score": score,
                "display_name": self.public_name(account) if account else None,
            })

        if db is not None and rows:
            await self._persist(db, rows)
        logger.info("leaderboard_snapshot_exported", season=season, entries=len(rows), persisted=db is not None)
        return rows

    async def _persist(self, db: AsyncSession, rows: list[dict[str, Any]]) -> None:
        now = self.clock.now()
        insert = pg_insert if db.get_bind().dialect.name == "postgresql" else sqlite_insert
        stmt = insert(SeasonSnapshot).values([{**row, "snapshot_at": now} for row in rows])
        stmt = stmt.on_conflict_do_update(
            index_elements=["season", "account_id"],
            set_={
                "rank": stmt.excluded.rank,
                "score": stmt.excluded.score,
                "display_name": stmt.excluded.display_name,
                "snapshot_at": stmt.excluded.snapshot_at,
            },
        )
        await db.execute(stmt)
        await db.commit()

    async def archive_season(
        self,
        season: str,
        db: AsyncSession | None = None,
        *,
        retention_seconds: int | None = None,
    ) -> int:
        """Export a season, then delete its set (or let it expire after ``retention_seconds``)."""
        rows = await self.snapshot_export(season, db)
        key = leaderboard_key(season)
        if retention_seconds is None:
            await self.redis.delete(key)
        else:
            await self.redis.expire(key, retention_seconds)
        logger.info("season_archived", season=season, entries=len(rows), retention_seconds=retention_seconds)
        return len(rows)
