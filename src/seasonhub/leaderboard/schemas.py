"""Response schemas for leaderboard endpoints."""

from __future__ import annotations

from pydantic import BaseModel


class LeaderboardEntryResponse(BaseModel):
    rank: int
    account_id: str
    display_name: str | None
    xp: int
    level: int
    highest_level_ever: int
    is_legacy_og: bool
    subscription_tier: int
    is_online: bool
    is_current_user: bool = False


class LeaderboardResponse(BaseModel):
    season: str
    entries: list[LeaderboardEntryResponse]
    total: int
    online_count: int
    offset: int
    limit: int


class AccountRankResponse(BaseModel):
    season: str
    rank: int
    xp: int
    total: int
    percentile: float
