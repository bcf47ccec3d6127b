"""Legacy single-provider record → canonical account migration.

Migration is a pure function invoked lazily the first time a legacy
identity resolves; there is no batch step. Legacy progression predates
seasons, so it is archived (all-time stats, highest level, achievements)
and the new account starts the current season at the floor.
"""

from __future__ import annotations

from datetime import datetime

from seasonhub.identity.models import Account, LegacyRecord, ProviderLink
from seasonhub.ledger.levels import compute_unlocks


def migrate_legacy(
    record: LegacyRecord,
    *,
    account_id: str,
    season: str,
    now: datetime,
    floor_level: int = 1,
    floor_xp: int = 0,
    chosen_name: str | None = None,
) -> Account:
    """Build the canonical account for a legacy record.

    ``chosen_name`` overrides the legacy name when the user picks a new
    one during registration.
    """
    highest = max(record.highest_level_ever, record.permanent_level)

    if chosen_name:
        display_name, name_source = chosen_name, "chosen"
    elif record.display_name:
        display_name, name_source = record.display_name, "legacy"
    elif record.provider_name:
        display_name, name_source = record.provider_name, "provider"
    else:
        display_name, name_source = None, "chosen"

    link = ProviderLink(
        provider=record.provider,
        provider_id=record.provider_id,
        account_id=account_id,
        linked_at=now,
        name=record.provider_name,
        tier=record.subscription_tier,
    )

    return Account(
        id=account_id,
        display_name=display_name,
        name_source=name_source,
        links={record.provider: link},
        email=record.email.strip().lower() if record.email else None,
        subscription_tier=record.subscription_tier,
        is_legacy_og=highest > 0,
        season=season,
        xp=floor_xp,
        level=floor_level,
        skill_points=floor_level,
        achievements=sorted(set(record.achievements)),
        highest_level_ever=highest,
        unlocks=compute_unlocks(highest),
        alltime_stats={k: float(v) for k, v in record.stats.items()},
        created_at=now,
        updated_at=now,
    )
