"""Season rollover.

A season change is applied lazily to each account the first time it is
touched in the new season. ``apply_rollover`` is pure and idempotent: it
does nothing when the stored tag already equals the target season.
"""

from __future__ import annotations

from datetime import datetime

from seasonhub.identity.models import Account, ResetMarker
from seasonhub.ledger.levels import compute_unlocks


def needs_rollover(account: Account, season: str) -> bool:
    return account.season != season


def apply_rollover(
    account: Account,
    season: str,
    *,
    now: datetime,
    floor_level: int = 1,
    floor_xp: int = 0,
) -> Account:
    """Archive the stored season and start ``season`` at the floor.

    Several missed seasons collapse into one step: the seasons in between
    never received any progression, so there is nothing else to archive.
    """
    if not needs_rollover(account, season):
        return account

    rolled = account.model_copy(deep=True)

    alltime = dict(rolled.alltime_stats)
    for key, value in rolled.stats.items():
        alltime[key] = alltime.get(key, 0.0) + value
    rolled.alltime_stats = alltime

    rolled.highest_level_ever = max(rolled.highest_level_ever, rolled.level)
    rolled.unlocks = compute_unlocks(rolled.highest_level_ever, rolled.unlocks)

    # A reset nobody acknowledged yet keeps pointing at the values the client still holds
    if rolled.reset_pending_at is None or rolled.reset_from is None:
        rolled.reset_from = ResetMarker(season=rolled.season, level=rolled.level, xp=rolled.xp)
    rolled.reset_pending_at = now

    rolled.season = season
    rolled.xp = floor_xp
    rolled.level = floor_level
    rolled.stats = {}
    rolled.unlocked_skills = []
    rolled.skill_points = floor_level
    rolled.insurance_pending = False
    rolled.clamp_window = None
    rolled.updated_at = now
    return rolled
