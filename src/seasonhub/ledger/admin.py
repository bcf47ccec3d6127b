"""
Administrative ledger operations.

Every operation needs its confirmation keyword and runs as a dry run
unless ``dry_run=False`` is passed explicitly. A dry run computes and
returns exactly what would change without writing anything.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog
from pydantic import BaseModel, Field

from seasonhub.clock import get_season_tag, parse_season
from seasonhub.errors import NotFoundError, ValidationError
from seasonhub.identity.index import email_index, name_index, provider_index
from seasonhub.identity.merge import combine_accounts
from seasonhub.identity.models import Account, ForceOverride
from seasonhub.identity.scan import invalidate_scan_cache
from seasonhub.identity.store import account_key, email_index_key, name_index_key, provider_index_key
from seasonhub.leaderboard.service import leaderboard_key
from seasonhub.ledger.levels import compute_unlocks, level_for_xp
from seasonhub.ledger.service import ProgressionLedger

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = structlog.get_logger()

OVERRIDE_CONFIRMATION = "OVERRIDE"
MERGE_CONFIRMATION = "MERGE"
PURGE_CONFIRMATION = "PURGE"
ARCHIVE_CONFIRMATION = "ARCHIVE"
SELF_DELETE_CONFIRMATION = "DELETE"


class AdminResult(BaseModel):
    operation: str
    dry_run: bool
    account_id: str | None = None
    changes: dict[str, Any] = Field(default_factory=dict)


def require_confirmation(given: str | None, expected: str) -> None:
    if given != expected:
        msg = f"Confirmation token '{expected}' required"
        raise ValidationError(msg)


class LedgerAdmin:
    """Override, merge, purge and archive; built on top of the ledger."""

    def __init__(self, ledger: ProgressionLedger) -> None:
        self.ledger = ledger
        self.redis = ledger.redis
        self.store = ledger.store
        self.leaderboard = ledger.leaderboard
        self.clock = ledger.clock

    # ------------------------------------------------------------------
    # Override
    # ------------------------------------------------------------------

    async def override(
        self,
        account_id: str,
        *,
        confirmation: str | None,
        xp: int | None = None,
        level: int | None = None,
        stats: dict[str, float] | None = None,
        reason: str | None = None,
        dry_run: bool = True,
    ) -> AdminResult:
        """Set progression values and flag them so client values are ignored until acknowledged."""
        require_confirmation(confirmation, OVERRIDE_CONFIRMATION)
        if xp is None and level is None and not stats:
            msg = "Nothing to override"
            raise ValidationError(msg)

        account = await self.ledger.load_current(account_id)
        keys: list[str] = []
        changes: dict[str, Any] = {}

        if xp is not None:
            xp = max(0, xp)
            changes["xp"] = {"from": account.xp, "to": xp}
            account.xp = xp
            keys.append("xp")
            if level is None:
                level = level_for_xp(xp)
        if level is not None:
            level = max(1, level)
            changes["level"] = {"from": account.level, "to": level}
            account.level = level
            keys.append("level")
        for key, value in (stats or {}).items():
            changes[f"stats.{key}"] = {"from": account.stats.get(key), "to": value}
            account.stats[key] = value
            keys.append(key)

        account.highest_level_ever = max(account.highest_level_ever, account.level)
        account.unlocks = compute_unlocks(account.highest_level_ever, account.unlocks)
        now = self.clock.now()
        account.force_override = ForceOverride(keys=keys, set_at=now, reason=reason)
        account.clamp_window = None
        account.updated_at = now

        if not dry_run:
            await self.store.save(account)
            await self.leaderboard.upsert(account.season, account.id, account.xp)
            logger.warning("admin_override_applied", account_id=account.id, keys=keys, reason=reason)
        return AdminResult(operation="override", dry_run=dry_run, account_id=account.id, changes=changes)

    # ------------------------------------------------------------------
    # Merge
    # ------------------------------------------------------------------

    async def merge(
        self,
        source_id: str,
        target_id: str,
        *,
        confirmation: str | None,
        dry_run: bool = True,
    ) -> AdminResult:
        """Fold ``source`` into ``target`` and delete ``source``."""
        require_confirmation(confirmation, MERGE_CONFIRMATION)
        if source_id == target_id:
            msg = "Cannot merge an account into itself"
            raise ValidationError(msg)

        source = await self.ledger.load_current(source_id)
        target = await self.ledger.load_current(target_id)
        merged = combine_accounts(
            source, target, now=self.clock.now(), audit_log_size=self.ledger.settings.anticheat_audit_log_size
        )

        changes: dict[str, Any] = {
            "source": source.id,
            "links_moved": sorted(set(merged.links) - set(target.links)),
            "xp": {"from": target.xp, "to": merged.xp},
            "level": {"from": target.level, "to": merged.level},
            "highest_level_ever": {"from": target.highest_level_ever, "to": merged.highest_level_ever},
            "achievements_added": sorted(set(merged.achievements) - set(target.achievements)),
        }
        if dry_run:
            return AdminResult(operation="merge", dry_run=True, account_id=target.id, changes=changes)

        await self.store.save(merged)
        for provider, link in merged.links.items():
            await provider_index(self.redis, self.store, provider).put(link.provider_id, merged.id)
        names = name_index(self.redis, self.store)
        if source.display_name and merged.display_name != source.display_name:
            await names.release(source.display_name, source.id)
        elif merged.display_name:
            await names.put(merged.display_name, merged.id)
        emails = email_index(self.redis, self.store)
        if source.email and merged.email != source.email:
            await emails.release(source.email, source.id)
        elif merged.email:
            await emails.put(merged.email, merged.id)

        await self.store.delete(source.id)
        await self.leaderboard.remove(source.season, source.id)
        await self.leaderboard.upsert(merged.season, merged.id, merged.xp)
        invalidate_scan_cache()

        logger.warning("admin_accounts_merged", source=source.id, target=merged.id)
        return AdminResult(operation="merge", dry_run=False, account_id=merged.id, changes=changes)

    # ------------------------------------------------------------------
    # Purge
    # ------------------------------------------------------------------

    async def purge(
        self,
        account_id: str,
        *,
        confirmation: str | None,
        dry_run: bool = True,
        expected_confirmation: str = PURGE_CONFIRMATION,
    ) -> AdminResult:
        """Delete an account together with every index entry and leaderboard entry pointing at it."""
        require_confirmation(confirmation, expected_confirmation)
        account = await self.store.get(account_id)
        if account is None:
            msg = "Account not found"
            raise NotFoundError(msg)

        keys = self._owned_keys(account)
        if dry_run:
            return AdminResult(operation="purge", dry_run=True, account_id=account.id, changes={"keys": keys})

        removed: list[str] = []
        for key in keys:
            if key.startswith("idx:"):
                # Only delete index entries that still point here
                if await self.redis.get(key) != account.id:
                    continue
            await self.redis.delete(key)
            removed.append(key)

        for tag in {account.season, get_season_tag(self.clock.now())}:
            await self.leaderboard.remove(tag, account.id)
        removed.append(leaderboard_key(account.season))
        invalidate_scan_cache()

        logger.warning("account_purged", account_id=account.id, keys=len(removed))
        return AdminResult(operation="purge", dry_run=False, account_id=account.id, changes={"keys": removed})

    async def delete_own_account(self, account_id: str, confirmation: str | None) -> AdminResult:
        """User-initiated purge; confirmed with ``DELETE`` and never a dry run."""
        return await self.purge(
            account_id,
            confirmation=confirmation,
            dry_run=False,
            expected_confirmation=SELF_DELETE_CONFIRMATION,
        )

    @staticmethod
    def _owned_keys(account: Account) -> list[str]:
        keys = [account_key(account.id)]
        keys.extend(provider_index_key(provider, link.provider_id) for provider, link in account.links.items())
        if account.display_name:
            keys.append(name_index_key(account.display_name))
        if account.email:
            keys.append(email_index_key(account.email))
        return keys

    # ------------------------------------------------------------------
    # Archive
    # ------------------------------------------------------------------

    async def archive_season(
        self,
        season: str,
        *,
        confirmation: str | None,
        db: AsyncSession | None = None,
        dry_run: bool = True,
    ) -> AdminResult:
        """Export a season leaderboard to SQL and drop its sorted set."""
        require_confirmation(confirmation, ARCHIVE_CONFIRMATION)
        try:
            parse_season(season)
        except ValueError as e:
            raise ValidationError(str(e)) from e
        if season == get_season_tag(self.clock.now()):
            msg = "Cannot archive the current season"
            raise ValidationError(msg)

        if dry_run:
            total = await self.leaderboard.cardinality(season)
            return AdminResult(operation="archive", dry_run=True, changes={"season": season, "entries": total})

        exported = await self.leaderboard.archive_season(season, db)
        return AdminResult(operation="archive", dry_run=False, changes={"season": season, "entries": exported})
