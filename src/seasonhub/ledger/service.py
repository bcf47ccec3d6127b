"""
Progression ledger.

Owns the canonical account's progression: lazy season rollover, client
delta merge under a monotonic ratchet, anti-cheat clamping, insurance
debit and presence. Every write also refreshes the account's leaderboard
score.

Concurrent syncs for one account are not serialized. Merges are
max-based so overlapping writes converge instead of regressing, and the
anti-cheat allowance is measured from a per-account clamp window, so
resubmitting a payload never earns a second allowance.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

import structlog

from seasonhub.anticheat.policy import AntiCheatPolicy
from seasonhub.anticheat.validator import PriorState, Submission, validate_submission
from seasonhub.clock import Clock, SystemClock, get_season_tag, hours_between
from seasonhub.errors import ConflictError, NotFoundError, ValidationError
from seasonhub.identity.models import Account, ClampWindow
from seasonhub.identity.store import AccountStore
from seasonhub.leaderboard.service import LeaderboardStore
from seasonhub.ledger.levels import compute_unlocks, level_for_xp
from seasonhub.ledger.reconcile import is_reset_acknowledged, merge_stats, reconcile_skill_points
from seasonhub.ledger.rollover import apply_rollover, needs_rollover
from seasonhub.ledger.schemas import PendingFlags, SyncRequest, flags_for

if TYPE_CHECKING:
    from redis.asyncio import Redis

    from seasonhub.config import Settings

logger = structlog.get_logger()


@dataclass
class SyncOutcome:
    account: Account
    flags: PendingFlags
    clamped: bool = False


class ProgressionLedger:
    """Season-aware progression reads and writes for canonical accounts."""

    def __init__(
        self,
        redis: Redis,
        settings: Settings,
        *,
        clock: Clock | None = None,
        leaderboard: LeaderboardStore | None = None,
    ) -> None:
        self.redis = redis
        self.settings = settings
        self.clock = clock or SystemClock()
        self.store = AccountStore(redis)
        self.leaderboard = leaderboard or LeaderboardStore(
            redis, clock=self.clock, online_window_seconds=settings.online_window_seconds
        )
        self.policy = AntiCheatPolicy.from_settings(settings)

    # ------------------------------------------------------------------
    # Loading and rollover
    # ------------------------------------------------------------------

    async def load(self, account_id: str) -> Account:
        account = await self.store.get(account_id)
        if account is None:
            msg = "Account not found"
            raise NotFoundError(msg)
        return account

    async def roll(self, account: Account, now: datetime) -> tuple[Account, bool]:
        """Apply a pending season rollover; returns ``(account, rolled)``."""
        season = get_season_tag(now)
        if not needs_rollover(account, season):
            return account, False

        old_season = account.season
        rolled = apply_rollover(
            account,
            season,
            now=now,
            floor_level=self.settings.season_floor_level,
            floor_xp=self.settings.season_floor_xp,
        )
        await self.leaderboard.move(old_season, season, rolled.id, rolled.xp)
        logger.info(
            "season_rollover",
            account_id=account.id,
            from_season=old_season,
            to_season=season,
            archived_level=account.level,
            highest_level_ever=rolled.highest_level_ever,
        )
        return rolled, True

    async def load_current(self, account_id: str) -> Account:
        """Load an account with any pending rollover applied and persisted."""
        now = self.clock.now()
        account, rolled = await self.roll(await self.load(account_id), now)
        if rolled:
            await self.store.save(account)
        return account

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def snapshot(self, account_id: str) -> SyncOutcome:
        """Current progression and pending flags."""
        account = await self.load_current(account_id)
        return SyncOutcome(account=account, flags=flags_for(account))

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    async def sync(self, account_id: str, request: SyncRequest, *, signed: bool = False) -> SyncOutcome:
        """
        Merge a client submission into the canonical record.

        Raises:
            NotFoundError: Unknown account.
        """
        now = self.clock.now()
        account, _ = await self.roll(await self.load(account_id), now)
        season = account.season

        stale = False
        if account.reset_pending_at is not None and account.reset_from is not None:
            if is_reset_acknowledged(
                account.reset_from,
                request.xp,
                request.level,
                current_season=season,
                floor_level=self.settings.season_floor_level,
                floor_xp=self.settings.season_floor_xp,
                acknowledged_season=request.acknowledged_season,
            ):
                logger.info("season_reset_acknowledged", account_id=account.id, season=season)
                account.reset_pending_at = None
                account.reset_from = None
            else:
                stale = True
                logger.info("stale_client_ignored", account_id=account.id, season=season, client_level=request.level)

        ignored: set[str] = set(account.force_override.keys) if account.force_override else set()
        if account.insurance_pending:
            ignored |= {"xp", "level"}
            if request.acknowledge_insurance:
                account.insurance_pending = False

        # Achievements are permanent and never tied to a season
        account.achievements = sorted(set(account.achievements) | set(request.achievements))
        if request.settings:
            account.settings = {**account.settings, **request.settings}

        clamped = False
        if not stale:
            clamped = self._merge_progression(account, request, ignored, now, signed=signed)

        account.highest_level_ever = max(account.highest_level_ever, account.level)
        account.unlocks = compute_unlocks(account.highest_level_ever, account.unlocks)

        if account.force_override is not None and request.acknowledge_override:
            logger.info("override_acknowledged", account_id=account.id, keys=account.force_override.keys)
            account.force_override = None

        account.last_sync_at = now
        account.last_seen = now
        account.updated_at = now
        await self.store.save(account)
        await self.leaderboard.upsert(season, account.id, account.xp)

        return SyncOutcome(account=account, flags=flags_for(account), clamped=clamped)

    def _merge_progression(
        self,
        account: Account,
        request: SyncRequest,
        ignored: set[str],
        now: datetime,
        *,
        signed: bool,
    ) -> bool:
        """Validate and ratchet xp/level/stats/skills in place; returns whether anything was clamped."""
        window = self._clamp_window(account, now)
        result = validate_submission(
            PriorState(
                xp=account.xp,
                level=account.level,
                stats=account.stats,
                baseline_xp=window.xp,
                baseline_stats=window.stats,
            ),
            Submission(xp=request.xp, level=request.level, stats=request.stats, signed=signed),
            hours_between(window.started_at, now),
            self.policy,
        )
        account.clamp_window = window
        self._record_audit(account, result.events, result.sample, now)

        if "xp" not in ignored:
            account.xp = max(account.xp, result.xp)
        if "level" not in ignored:
            account.level = max(account.level, result.level)
        account.stats = merge_stats(account.stats, result.stats, ignore=ignored)

        if "skill_points" not in ignored:
            account.skill_points, account.unlocked_skills = reconcile_skill_points(
                account.skill_points,
                account.unlocked_skills,
                request.skill_points,
                request.unlocked_skills,
                account.level,
            )
        return result.clamped

    def _clamp_window(self, account: Account, now: datetime) -> ClampWindow:
        """The open clamp window, or a new one anchored at the last sync once it has expired."""
        window = account.clamp_window
        if window is not None and hours_between(window.started_at, now) <= self.policy.max_window_hours:
            return window
        return ClampWindow(
            started_at=account.last_sync_at or account.created_at,
            xp=account.xp,
            stats=dict(account.stats),
        )

    def _record_audit(
        self,
        account: Account,
        events: list[dict[str, Any]],
        sample: dict[str, Any] | None,
        now: datetime,
    ) -> None:
        stamp = now.isoformat()
        for event in events:
            if event["type"] in ("xp_clamped", "stat_clamped"):
                logger.warning("progress_clamped", account_id=account.id, **event)
        # An identical event at the same instant is a resubmission
        fresh = [entry for entry in ({**e, "at": stamp} for e in events) if entry not in account.anticheat_log]
        if fresh:
            account.anticheat_log = (account.anticheat_log + fresh)[-self.settings.anticheat_audit_log_size :]
        if sample is not None:
            account.rate_samples = (account.rate_samples + [{**sample, "at": stamp}])[
                -self.settings.anticheat_rate_sample_size :
            ]

    # ------------------------------------------------------------------
    # Presence and insurance
    # ------------------------------------------------------------------

    async def heartbeat(self, account_id: str) -> datetime:
        """Mark the account as seen now without overwriting a concurrent sync."""
        now = self.clock.now()
        if not await self.store.touch_last_seen(account_id, now):
            msg = "Account not found"
            raise NotFoundError(msg)
        return now

    async def use_insurance(self, account_id: str, amount: int) -> SyncOutcome:
        """
        Debit season XP once per season.

        Raises:
            ValidationError: Amount outside (0, insurance_max_debit].
            ConflictError: Insurance already used this season.
        """
        if amount <= 0 or amount > self.settings.insurance_max_debit:
            msg = f"Insurance amount must be between 1 and {self.settings.insurance_max_debit}"
            raise ValidationError(msg)

        now = self.clock.now()
        account, _ = await self.roll(await self.load(account_id), now)
        if account.insurance_used_season == account.season:
            msg = "Insurance already used this season"
            raise ConflictError(msg)

        before_xp, before_level = account.xp, account.level
        account.xp = max(0, account.xp - amount)
        account.level = level_for_xp(account.xp)
        account.insurance_used_season = account.season
        account.insurance_pending = True
        account.clamp_window = None
        account.anticheat_log = (
            account.anticheat_log
            + [{"type": "insurance_debit", "amount": amount, "xp_before": before_xp, "at": now.isoformat()}]
        )[-self.settings.anticheat_audit_log_size :]
        account.updated_at = now
        await self.store.save(account)
        await self.leaderboard.upsert(account.season, account.id, account.xp)

        logger.info(
            "insurance_debited",
            account_id=account.id,
            amount=amount,
            xp=account.xp,
            level_before=before_level,
            level_after=account.level,
        )
        return SyncOutcome(account=account, flags=flags_for(account))
