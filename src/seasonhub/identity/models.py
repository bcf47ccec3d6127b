"""Canonical account record and related value types.

Accounts are stored as one JSON document per Redis key, so these are
pydantic models rather than ORM rows.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

ProviderKind = Literal["discord", "patreon"]
PROVIDERS: tuple[str, ...] = ("discord", "patreon")


class ProviderLink(BaseModel):
    """Association between an external identity and a canonical account."""

    provider: str
    provider_id: str
    account_id: str
    linked_at: datetime
    name: str | None = None
    tier: int = 0


class ResetMarker(BaseModel):
    """Pre-reset progression kept while a season reset awaits acknowledgement."""

    season: str
    level: int
    xp: int


class ForceOverride(BaseModel):
    """Keys whose client values are ignored until the client acknowledges."""

    keys: list[str]
    set_at: datetime
    reason: str | None = None


class ClampWindow(BaseModel):
    """Baseline the anti-cheat allowance is measured from until the window expires."""

    started_at: datetime
    xp: int
    stats: dict[str, float] = Field(default_factory=dict)


class Account(BaseModel):
    """The single unified identity record merging all linked providers."""

    id: str
    display_name: str | None = None
    name_source: Literal["chosen", "legacy", "provider"] = "chosen"
    links: dict[str, ProviderLink] = Field(default_factory=dict)
    email: str | None = None
    subscription_tier: int = 0
    tier_floor: int = 0
    is_legacy_og: bool = False

    # Season-scoped progression
    season: str
    xp: int = 0
    level: int = 1
    stats: dict[str, float] = Field(default_factory=dict)
    skill_points: int = 1
    unlocked_skills: list[str] = Field(default_factory=list)

    # Permanent progression
    achievements: list[str] = Field(default_factory=list)
    highest_level_ever: int = 0
    unlocks: dict[str, bool] = Field(default_factory=dict)
    alltime_stats: dict[str, float] = Field(default_factory=dict)

    # Anti-cheat
    anticheat_log: list[dict[str, Any]] = Field(default_factory=list)
    rate_samples: list[dict[str, Any]] = Field(default_factory=list)
    clamp_window: ClampWindow | None = None

    # Pending flags
    reset_pending_at: datetime | None = None
    reset_from: ResetMarker | None = None
    force_override: ForceOverride | None = None
    insurance_used_season: str | None = None
    insurance_pending: bool = False

    settings: dict[str, Any] = Field(default_factory=dict)

    created_at: datetime
    updated_at: datetime
    last_sync_at: datetime | None = None
    last_seen: datetime | None = None

    @property
    def effective_tier(self) -> int:
        return max(self.subscription_tier, self.tier_floor)

    def provider_id(self, provider: str) -> str | None:
        link = self.links.get(provider)
        return link.provider_id if link else None


class LegacyRecord(BaseModel):
    """Pre-unification single-provider profile."""

    provider: str
    provider_id: str
    display_name: str | None = None
    provider_name: str | None = None
    email: str | None = None
    xp: int = 0
    level: int = 1
    highest_level_ever: int = 0
    achievements: list[str] = Field(default_factory=list)
    stats: dict[str, float] = Field(default_factory=dict)
    subscription_tier: int = 0
    migrated_to: str | None = None

    @property
    def permanent_level(self) -> int:
        return max(self.highest_level_ever, self.level if self.xp or self.level > 1 else 0)


class ProviderIdentity(BaseModel):
    """What an identity provider tells us about a bearer credential."""

    provider: str
    provider_id: str
    name_candidate: str | None = None
    email: str | None = None
    verified: bool = False
    subscription_tier: int = 0


class ResolveResult(BaseModel):
    exists: bool
    account_id: str | None = None
    display_name: str | None = None
    needs_registration: bool = False
    matched_by: Literal["index", "scan", "legacy", "email"] | None = None
    legacy: LegacyRecord | None = None
