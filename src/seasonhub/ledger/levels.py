"""Level curve, unlock thresholds and computation.

These values MUST match the desktop client's progression curve exactly.
XP is cumulative within a season; level 1 starts at 0 XP.
"""

from __future__ import annotations

from bisect import bisect_right
from functools import lru_cache

MAX_LEVEL = 500

# Feature flags unlocked permanently by highest level ever reached.
UNLOCK_THRESHOLDS: dict[str, int] = {
    "avatars": 20,
    "ai_companion": 50,
    "autonomy_mode": 100,
    "takeover_mode": 125,
}

LEVEL_TITLES: list[tuple[int, str]] = [
    (1, "Beginner"),
    (5, "Trainee"),
    (10, "Eager"),
    (20, "Devoted"),
    (30, "Advanced"),
    (50, "Perfect"),
]


def xp_for_level(level: int) -> int:
    """XP needed to advance from ``level`` to ``level + 1``."""
    if level <= 80:
        return round(800 + (level - 1) * (1700.0 / 79))
    if level <= 100:
        return round(2500 + (level - 80) * (1500.0 / 20))
    if level <= 125:
        return round(4000 + (level - 100) * (2000.0 / 25))
    if level <= 150:
        return round(6000 + (level - 125) * (4000.0 / 25))
    # 3% compound growth past 150
    return round(10000 * 1.03 ** (level - 150))


@lru_cache(maxsize=1)
def _cumulative_table() -> tuple[int, ...]:
    """table[i] = cumulative XP required to reach level i + 1."""
    table = [0]
    for level in range(1, MAX_LEVEL):
        table.append(table[-1] + xp_for_level(level))
    return tuple(table)


def cumulative_xp_for_level(level: int) -> int:
    """Total season XP required to reach ``level``."""
    level = max(1, min(level, MAX_LEVEL))
    return _cumulative_table()[level - 1]


def level_for_xp(total_xp: int) -> int:
    """Level implied by cumulative XP via the canonical curve."""
    if total_xp <= 0:
        return 1
    return min(bisect_right(_cumulative_table(), total_xp), MAX_LEVEL)


def compute_level(total_xp: int) -> dict:
    """Compute level info from cumulative XP."""
    level = level_for_xp(total_xp)
    floor = cumulative_xp_for_level(level)
    return {
        "level": level,
        "title": title_for_level(level),
        "xp_into_level": max(0, total_xp - floor),
        "xp_for_level": xp_for_level(level),
    }


def title_for_level(level: int) -> str:
    title = LEVEL_TITLES[0][1]
    for threshold, name in LEVEL_TITLES:
        if level >= threshold:
            title = name
    return title


def compute_unlocks(highest_level_ever: int, previous: dict[str, bool] | None = None) -> dict[str, bool]:
    """Unlock flags for a highest level; flags already granted are never revoked."""
    previous = previous or {}
    return {
        feature: bool(previous.get(feature)) or highest_level_ever >= threshold
        for feature, threshold in UNLOCK_THRESHOLDS.items()
    }
