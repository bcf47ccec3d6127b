"""Pure reconciliation rules used by ledger sync."""

from __future__ import annotations

from seasonhub.identity.models import ResetMarker


def is_reset_acknowledged(
    marker: ResetMarker,
    client_xp: int,
    client_level: int,
    *,
    current_season: str,
    floor_level: int = 1,
    floor_xp: int = 0,
    acknowledged_season: str | None = None,
) -> bool:
    """Decide whether a client has applied a pending season reset.

    An explicit ``acknowledged_season`` equal to the current season always
    counts. Otherwise the submission is classified by which state it is
    closer to: level distance decides, XP distance breaks ties, and a full
    tie counts as acknowledged.
    """
    if acknowledged_season is not None and acknowledged_season == current_season:
        return True

    to_old = abs(client_level - marker.level)
    to_floor = abs(client_level - floor_level)
    if to_old != to_floor:
        return to_floor < to_old
    return abs(client_xp - floor_xp) <= abs(client_xp - marker.xp)


def reconcile_skill_points(
    server_points: int,
    server_skills: list[str],
    client_points: int | None,
    client_skills: list[str] | None,
    level: int,
) -> tuple[int, list[str]]:
    """Return the merged ``(skill_points, unlocked_skills)``.

    More unlocked skills on the client means a legitimate spend happened
    there: its skills are taken along with the lower of the two balances.
    Equal counts take the higher balance. With no unlocked skills at all
    the balance is floored at the current level.
    """
    points, skills = server_points, list(server_skills)

    if client_points is not None and client_skills is not None:
        if len(client_skills) > len(server_skills):
            points, skills = min(server_points, client_points), list(dict.fromkeys(client_skills))
        elif len(client_skills) == len(server_skills):
            points = max(server_points, client_points)
    elif client_points is not None and not server_skills:
        points = max(server_points, client_points)

    if not skills:
        points = max(points, level)
    return max(points, 0), skills


def merge_stats(
    server: dict[str, float],
    client: dict[str, float],
    *,
    ignore: set[str] | frozenset[str] = frozenset(),
) -> dict[str, float]:
    """Per-key max; keys in ``ignore`` keep the server value."""
    merged = dict(server)
    for key, value in client.items():
        if key in ignore:
            continue
        merged[key] = max(merged.get(key, 0.0), value)
    return merged
