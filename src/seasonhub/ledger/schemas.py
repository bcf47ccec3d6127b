"""Request/response schemas for profile and progression endpoints."""

from __future__ import annotations

import math
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator

from seasonhub.identity.models import Account, ResetMarker
from seasonhub.ledger.levels import compute_level, title_for_level


def _as_int(value: Any, default: int) -> int:  # noqa: ANN401
    """Best-effort integer; anything unusable becomes ``default``."""
    if isinstance(value, bool):
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(number):
        return default
    return int(number)


def _as_float(value: Any) -> float:  # noqa: ANN401
    if isinstance(value, bool):
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return number if math.isfinite(number) and number > 0 else 0.0


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------


class SyncRequest(BaseModel):
    """Client-submitted progression. Malformed numbers fall back to defaults."""

    xp: int = 0
    level: int = 1
    achievements: list[str] = Field(default_factory=list)
    stats: dict[str, float] = Field(default_factory=dict)
    skill_points: int | None = None
    unlocked_skills: list[str] | None = None
    settings: dict[str, Any] | None = None

    # Acknowledgements of pending flags returned by a previous call
    acknowledged_season: str | None = None
    acknowledge_override: bool = False
    acknowledge_insurance: bool = False

    @field_validator("xp", mode="before")
    @classmethod
    def coerce_xp(cls, v: Any) -> int:  # noqa: ANN401
        return max(0, _as_int(v, 0))

    @field_validator("level", mode="before")
    @classmethod
    def coerce_level(cls, v: Any) -> int:  # noqa: ANN401
        return max(1, _as_int(v, 1))

    @field_validator("skill_points", mode="before")
    @classmethod
    def coerce_points(cls, v: Any) -> int | None:  # noqa: ANN401
        if v is None:
            return None
        return max(0, _as_int(v, 0))

    @field_validator("stats", mode="before")
    @classmethod
    def coerce_stats(cls, v: Any) -> dict[str, float]:  # noqa: ANN401
        if not isinstance(v, dict):
            return {}
        return {str(key): _as_float(value) for key, value in v.items()}

    @field_validator("achievements", mode="before")
    @classmethod
    def coerce_achievements(cls, v: Any) -> list[str]:  # noqa: ANN401
        if not isinstance(v, list):
            return []
        return [item for item in v if isinstance(item, str) and item]

    @field_validator("unlocked_skills", mode="before")
    @classmethod
    def coerce_skills(cls, v: Any) -> list[str] | None:  # noqa: ANN401
        if v is None:
            return None
        if not isinstance(v, list):
            return []
        return [item for item in v if isinstance(item, str) and item]


class InsuranceRequest(BaseModel):
    amount: int = Field(..., gt=0)


class DeleteAccountRequest(BaseModel):
    confirmation: str


# ---------------------------------------------------------------------------
# Profile
# ---------------------------------------------------------------------------


class PendingFlags(BaseModel):
    """Flags the client must acknowledge on a later call."""

    reset_pending: bool = False
    reset_from: ResetMarker | None = None
    override_active: bool = False
    override_keys: list[str] = Field(default_factory=list)
    insurance_used_this_season: bool = False
    insurance_pending: bool = False


class ProfileResponse(BaseModel):
    account_id: str
    display_name: str | None
    season: str
    xp: int
    level: int
    title: str
    xp_into_level: int
    xp_for_level: int
    stats: dict[str, float]
    skill_points: int
    unlocked_skills: list[str]
    achievements: list[str]
    highest_level_ever: int
    unlocks: dict[str, bool]
    alltime_stats: dict[str, float]
    subscription_tier: int
    is_legacy_og: bool
    linked_providers: list[str]
    settings: dict[str, Any]
    last_sync_at: datetime | None
    flags: PendingFlags


class SyncResponse(BaseModel):
    profile: ProfileResponse
    clamped: bool = False


class HeartbeatResponse(BaseModel):
    last_seen: datetime


class DeleteAccountResponse(BaseModel):
    deleted: bool
    account_id: str


class PublicProfileResponse(BaseModel):
    """What anyone may see about an account by display name."""

    display_name: str
    level: int
    highest_level_ever: int
    achievements_count: int
    is_legacy_og: bool
    is_online: bool


def flags_for(account: Account) -> PendingFlags:
    override = account.force_override
    return PendingFlags(
        reset_pending=account.reset_pending_at is not None,
        reset_from=account.reset_from if account.reset_pending_at is not None else None,
        override_active=override is not None,
        override_keys=list(override.keys) if override else [],
        insurance_used_this_season=account.insurance_used_season == account.season,
        insurance_pending=account.insurance_pending,
    )


def profile_from_account(account: Account) -> ProfileResponse:
    level_info = compute_level(account.xp)
    return ProfileResponse(
        account_id=account.id,
        display_name=account.display_name,
        season=account.season,
        xp=account.xp,
        level=account.level,
        title=title_for_level(account.level),
        xp_into_level=level_info["xp_into_level"],
        xp_for_level=level_info["xp_for_level"],
        stats=account.stats,
        skill_points=account.skill_points,
        unlocked_skills=account.unlocked_skills,
        achievements=account.achievements,
        highest_level_ever=account.highest_level_ever,
        unlocks=account.unlocks,
        alltime_stats=account.alltime_stats,
        subscription_tier=account.effective_tier,
        is_legacy_og=account.is_legacy_og,
        linked_providers=sorted(account.links),
        settings=account.settings,
        last_sync_at=account.last_sync_at,
        flags=flags_for(account),
    )
