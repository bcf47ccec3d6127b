"""UTC wall clock and season tag helpers.

One season is one calendar month in UTC, tagged ``YYYY-MM``.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    """Real UTC clock."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


def get_season_tag(dt: datetime) -> str:
    """Season tag for a moment, e.g. '2026-02'."""
    return dt.astimezone(timezone.utc).strftime("%Y-%m")


def get_current_season(clock: Clock | None = None) -> str:
    """Season tag for now."""
    return get_season_tag((clock or SystemClock()).now())


def get_previous_season(season: str) -> str:
    """Tag of the month before ``season``."""
    year, month = parse_season(season)
    if month == 1:
        return f"{year - 1:04d}-12"
    return f"{year:04d}-{month - 1:02d}"


def parse_season(season: str) -> tuple[int, int]:
    """Split '2026-02' into (2026, 2). Raises ValueError on a malformed tag."""
    try:
        dt = datetime.strptime(season, "%Y-%m")
    except (TypeError, ValueError) as e:
        msg = f"Invalid season tag: {season!r}"
        raise ValueError(msg) from e
    return dt.year, dt.month


def hours_between(earlier: datetime | None, later: datetime) -> float:
    """Elapsed hours, never negative; None counts as no elapsed time."""
    if earlier is None:
        return 0.0
    return max(0.0, (later - earlier).total_seconds() / 3600.0)
