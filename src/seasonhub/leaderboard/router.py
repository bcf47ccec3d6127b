"""Leaderboard router: /v3/leaderboard endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from seasonhub.auth.dependencies import get_current_account_id
from seasonhub.clock import Clock, get_current_season, parse_season
from seasonhub.config import get_settings
from seasonhub.dependencies import get_clock, get_leaderboard
from seasonhub.errors import ValidationError
from seasonhub.leaderboard.schemas import AccountRankResponse, LeaderboardEntryResponse, LeaderboardResponse
from seasonhub.leaderboard.service import LeaderboardStore

router = APIRouter(prefix="/v3/leaderboard", tags=["Leaderboard"])


def _season_or_current(season: str | None, clock: Clock) -> str:
    if season is None:
        return get_current_season(clock)
    try:
        parse_season(season)
    except ValueError as e:
        raise ValidationError(str(e)) from e
    return season


@router.get("", response_model=LeaderboardResponse)
async def get_leaderboard_page(
    season: str | None = Query(None, description="Season tag e.g. 2026-02; defaults to current"),
    offset: int = Query(0, ge=0),
    limit: int = Query(50, ge=1),
    leaderboard: LeaderboardStore = Depends(get_leaderboard),  # noqa: B008
    clock: Clock = Depends(get_clock),  # noqa: B008
) -> LeaderboardResponse:
    """Season leaderboard ranked by XP, with online status."""
    limit = min(limit, get_settings().leaderboard_max_page_size)
    data = await leaderboard.get_page(_season_or_current(season, clock), offset, limit)
    return LeaderboardResponse(
        season=data["season"],
        entries=[LeaderboardEntryResponse(**e) for e in data["entries"]],
        total=data["total"],
        online_count=data["online_count"],
        offset=data["offset"],
        limit=data["limit"],
    )


@router.get("/me", response_model=AccountRankResponse)
async def get_my_rank(
    season: str | None = Query(None),
    account_id: str = Depends(get_current_account_id),
    leaderboard: LeaderboardStore = Depends(get_leaderboard),  # noqa: B008
    clock: Clock = Depends(get_clock),  # noqa: B008
) -> AccountRankResponse:
    """The signed-in account's rank."""
    data = await leaderboard.get_rank(_season_or_current(season, clock), account_id)
    return AccountRankResponse(**data)
