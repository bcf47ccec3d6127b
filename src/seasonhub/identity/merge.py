"""Combine two account records that belong to the same person.

Used by provider auto-linking (an owner left with no links is folded into
the claimant) and by the administrative merge. Nothing is summed: every
numeric field takes the max so a merge can never inflate progression.
"""

from __future__ import annotations

from datetime import datetime

from seasonhub.identity.models import Account
from seasonhub.ledger.levels import compute_unlocks


def _max_merge(a: dict[str, float], b: dict[str, float]) -> dict[str, float]:
    merged = dict(a)
    for key, value in b.items():
        merged[key] = max(merged.get(key, value), value)
    return merged


def combine_accounts(source: Account, target: Account, *, now: datetime, audit_log_size: int = 50) -> Account:
    """Return ``target`` with ``source`` folded in. Inputs are not mutated."""
    merged = target.model_copy(deep=True)

    for provider, link in source.links.items():
        if provider not in merged.links:
            merged.links[provider] = link.model_copy(update={"account_id": merged.id})

    if not merged.email and source.email:
        merged.email = source.email
    if not merged.display_name and source.display_name:
        merged.display_name = source.display_name
        merged.name_source = source.name_source

    merged.subscription_tier = max(merged.subscription_tier, source.subscription_tier)
    merged.tier_floor = max(merged.tier_floor, source.tier_floor)
    merged.is_legacy_og = merged.is_legacy_og or source.is_legacy_og

    if source.season > merged.season:
        # Source is in a later season: its seasonal progression is the live one
        merged.season = source.season
        merged.xp = source.xp
        merged.level = source.level
        merged.stats = dict(source.stats)
        merged.skill_points = source.skill_points
        merged.unlocked_skills = list(source.unlocked_skills)
    elif source.season == merged.season:
        merged.xp = max(merged.xp, source.xp)
        merged.level = max(merged.level, source.level)
        merged.stats = _max_merge(merged.stats, source.stats)
        if len(source.unlocked_skills) > len(merged.unlocked_skills):
            merged.unlocked_skills = list(source.unlocked_skills)
            merged.skill_points = source.skill_points

    merged.achievements = sorted(set(merged.achievements) | set(source.achievements))
    merged.highest_level_ever = max(merged.highest_level_ever, source.highest_level_ever, merged.level)
    merged.unlocks = compute_unlocks(
        merged.highest_level_ever,
        {k: bool(merged.unlocks.get(k) or source.unlocks.get(k)) for k in set(merged.unlocks) | set(source.unlocks)},
    )
    merged.alltime_stats = _max_merge(merged.alltime_stats, source.alltime_stats)
    merged.anticheat_log = (source.anticheat_log + merged.anticheat_log)[-audit_log_size:]
    merged.settings = {**source.settings, **merged.settings}
    merged.clamp_window = None
    merged.created_at = min(merged.created_at, source.created_at)
    merged.updated_at = now
    return merged
