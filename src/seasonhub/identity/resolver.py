"""
Identity resolution business logic.

Maps an external provider identity (and optionally a verified email) to a
canonical account: first-time registration, linking a second provider,
lazy legacy migration and self-healing of the secondary indexes.

Writes go record-first, then indexes. Every reader tolerates a partially
applied write and repairs it instead of assuming consistency.
"""

from __future__ import annotations

import re
import uuid
from typing import TYPE_CHECKING

import structlog
from pydantic import BaseModel
from redis.exceptions import RedisError

from seasonhub.clock import Clock, SystemClock, get_season_tag
from seasonhub.errors import ConflictError, NotFoundError, ValidationError
from seasonhub.identity.index import email_index, name_index, provider_index
from seasonhub.identity.legacy import migrate_legacy
from seasonhub.identity.merge import combine_accounts
from seasonhub.identity.models import (
    PROVIDERS,
    Account,
    LegacyRecord,
    ProviderIdentity,
    ProviderLink,
    ResolveResult,
)
from seasonhub.identity.policy import TierPolicy, no_tier_policy
from seasonhub.identity.scan import find_by_provider_scan, invalidate_scan_cache
from seasonhub.identity.store import AccountStore, normalize_email
from seasonhub.leaderboard.service import LeaderboardStore
from seasonhub.ledger.levels import compute_unlocks

if TYPE_CHECKING:
    from redis.asyncio import Redis

    from seasonhub.config import Settings

logger = structlog.get_logger()

_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_.\-]+$")


class RegisterResult(BaseModel):
    success: bool
    account_id: str
    migrated_legacy: bool = False


class LinkResult(BaseModel):
    success: bool
    account_id: str
    linked_provider: str
    absorbed_account_id: str | None = None


class IdentityResolver:
    """Resolve, register and link provider identities."""

    def __init__(
        self,
        redis: Redis,
        settings: Settings,
        *,
        tier_policy: TierPolicy = no_tier_policy,
        clock: Clock | None = None,
        leaderboard: LeaderboardStore | None = None,
    ) -> None:
        self.redis = redis
        self.settings = settings
        self.tier_policy = tier_policy
        self.clock = clock or SystemClock()
        self.store = AccountStore(redis)
        self.leaderboard = leaderboard or LeaderboardStore(
            redis, clock=self.clock, online_window_seconds=settings.online_window_seconds
        )
        self.names = name_index(redis, self.store)
        self.emails = email_index(redis, self.store)

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def resolve(self, provider: str, provider_id: str, email: str | None = None) -> ResolveResult:
        """Map a provider identity to an account; never raises on store failure."""
        self._check_provider(provider)
        try:
            return await self._resolve(provider, provider_id, email)
        except RedisError:
            logger.warning("resolve_store_unavailable", provider=provider, provider_id=provider_id, exc_info=True)
            return ResolveResult(exists=False, needs_registration=True)

    async def _resolve(self, provider: str, provider_id: str, email: str | None) -> ResolveResult:
        account = await provider_index(self.redis, self.store, provider).lookup(provider_id)
        if account is not None:
            return await self._found(account, "index")

        account = await self._scan_for(provider, provider_id)
        if account is not None:
            return await self._found(account, "scan")

        legacy = await self.store.get_legacy(provider, provider_id)
        if legacy is not None:
            result = await self._resolve_legacy(legacy)
            if result is not None:
                return result

        if email:
            account = await self.emails.lookup(email)
            if account is not None and account.provider_id(provider) is None:
                await self._attach_link(account, provider, provider_id, ProviderIdentity(
                    provider=provider, provider_id=provider_id, email=email, verified=True,
                ))
                logger.info("email_soft_match_linked", provider=provider, account_id=account.id)
                return await self._found(account, "email")

        return ResolveResult(exists=False, needs_registration=True, legacy=legacy)

    async def _found(self, account: Account, matched_by: str) -> ResolveResult:
        await self._heal_indexes(account)
        return ResolveResult(
            exists=True,
            account_id=account.id,
            display_name=account.display_name,
            needs_registration=account.display_name is None,
            matched_by=matched_by,  # type: ignore[arg-type]
        )

    async def _scan_for(self, provider: str, provider_id: str) -> Account | None:
        account = await find_by_provider_scan(
            self.store,
            provider,
            provider_id,
            budget_seconds=self.settings.scan_budget_seconds,
            cache_ttl_seconds=self.settings.scan_cache_ttl_seconds,
        )
        if account is not None:
            await provider_index(self.redis, self.store, provider).repair(provider_id, account.id)
        return account

    async def _find_by_provider(self, provider: str, provider_id: str) -> Account | None:
        account = await provider_index(self.redis, self.store, provider).lookup(provider_id)
        if account is None:
            account = await self._scan_for(provider, provider_id)
        return account

    async def _resolve_legacy(self, legacy: LegacyRecord) -> ResolveResult | None:
        if legacy.migrated_to:
            account = await self.store.get(legacy.migrated_to)
            if account is not None and account.provider_id(legacy.provider) == legacy.provider_id:
                await provider_index(self.redis, self.store, legacy.provider).repair(legacy.provider_id, account.id)
                return await self._found(account, "legacy")
            # Migrated account was purged; treat the identity as new
            return None

        account = await self._migrate(legacy, chosen_name=None)
        result = await self._found(account, "legacy")
        result.legacy = legacy
        return result

    async def _migrate(self, legacy: LegacyRecord, chosen_name: str | None) -> Account:
        """Create the canonical account for a legacy record and mark it migrated."""
        now = self.clock.now()
        account = migrate_legacy(
            legacy,
            account_id=uuid.uuid4().hex,
            season=get_season_tag(now),
            now=now,
            floor_level=self.settings.season_floor_level,
            floor_xp=self.settings.season_floor_xp,
            chosen_name=chosen_name,
        )
        account.tier_floor = self.tier_policy(account.email, account.display_name)
        await self.store.save(account)

        if account.display_name:
            try:
                await self._claim_name(account, account.display_name, legacy=legacy)
            except ConflictError:
                if chosen_name:
                    await self.store.delete(account.id)
                    raise
                logger.info("legacy_name_unavailable", account_id=account.id, name=account.display_name)
                account.display_name = None
                await self.store.save(account)

        await provider_index(self.redis, self.store, legacy.provider).put(legacy.provider_id, account.id)
        if account.email:
            await self.emails.claim(account.email, account.id)

        legacy.migrated_to = account.id
        await self.store.save_legacy(legacy)
        logger.info(
            "legacy_account_migrated",
            account_id=account.id,
            provider=legacy.provider,
            highest_level_ever=account.highest_level_ever,
        )
        return account

    async def _heal_indexes(self, account: Account) -> None:
        """Re-point missing name/email index entries at the account."""
        try:
            if account.display_name:
                owner_id = await self.names.owner_id(account.display_name)
                if owner_id is None:
                    await self.names.repair(account.display_name, account.id)
                elif owner_id != account.id and await self.names.lookup(account.display_name) is None:
                    await self.names.repair(account.display_name, account.id)
                elif owner_id != account.id:
                    # Another live account holds the name; ours lost the claim race
                    logger.warning("display_name_claim_lost", account_id=account.id, owner_id=owner_id)
                    account.display_name = None
                    await self.store.save(account)
            if account.email and await self.emails.owner_id(account.email) is None:
                await self.emails.repair(account.email, account.id)
        except RedisError:
            logger.warning("index_heal_failed", account_id=account.id, exc_info=True)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def validate_display_name(self, display_name: str) -> str:
        name = (display_name or "").strip()
        if not (self.settings.display_name_min_length <= len(name) <= self.settings.display_name_max_length):
            msg = (
                f"Display name must be {self.settings.display_name_min_length}-"
                f"{self.settings.display_name_max_length} characters"
            )
            raise ValidationError(msg)
        if not _NAME_PATTERN.match(name):
            msg = "Display name may only contain letters, digits, '_', '-' and '.'"
            raise ValidationError(msg)
        return name

    async def is_name_available(self, display_name: str) -> bool:
        """True when no live account holds the name (orphans are cleaned)."""
        return await self.names.lookup(display_name) is None

    async def register(
        self,
        display_name: str,
        provider: str,
        provider_id: str,
        provider_data: ProviderIdentity,
    ) -> RegisterResult:
        """
        Create a canonical account for a provider identity with a chosen name.

        Raises:
            ValidationError: Malformed display name or provider.
            ConflictError: Name genuinely taken, or provider already registered.
        """
        self._check_provider(provider)
        name = self.validate_display_name(display_name)

        existing = await self._find_by_provider(provider, provider_id)
        if existing is not None:
            if existing.display_name:
                msg = "This identity is already registered"
                raise ConflictError(msg)
            # Account exists (legacy migration or superseded name) but has no name yet
            await self._claim_name(existing, name, legacy=await self.store.get_legacy(provider, provider_id))
            existing.display_name = name
            existing.name_source = "chosen"
            existing.updated_at = self.clock.now()
            await self.store.save(existing)
            logger.info("display_name_chosen", account_id=existing.id, name=name)
            return RegisterResult(success=True, account_id=existing.id)

        legacy = await self.store.get_legacy(provider, provider_id)
        if legacy is not None and not legacy.migrated_to:
            account = await self._migrate(legacy, chosen_name=name)
            return RegisterResult(success=True, account_id=account.id, migrated_legacy=True)

        email = self._verified_email(provider_data)
        now = self.clock.now()
        account_id = uuid.uuid4().hex
        floor_level = self.settings.season_floor_level
        account = Account(
            id=account_id,
            display_name=name,
            name_source="chosen",
            links={
                provider: ProviderLink(
                    provider=provider,
                    provider_id=provider_id,
                    account_id=account_id,
                    linked_at=now,
                    name=provider_data.name_candidate,
                    tier=provider_data.subscription_tier,
                ),
            },
            email=email,
            subscription_tier=provider_data.subscription_tier,
            tier_floor=self.tier_policy(email, name),
            season=get_season_tag(now),
            xp=self.settings.season_floor_xp,
            level=floor_level,
            skill_points=floor_level,
            unlocks=compute_unlocks(0),
            created_at=now,
            updated_at=now,
        )

        # Record first: a claimed name must never point at a missing record
        await self.store.save(account)
        try:
            await self._claim_name(account, name, legacy=legacy)
        except ConflictError:
            await self.store.delete(account_id)
            raise

        await provider_index(self.redis, self.store, provider).put(provider_id, account_id)
        if email:
            await self.emails.claim(email, account_id)

        logger.info("account_registered", account_id=account_id, provider=provider, name=name)
        return RegisterResult(success=True, account_id=account_id)

    async def _claim_name(self, account: Account, name: str, *, legacy: LegacyRecord | None) -> None:
        """Point the name index at ``account`` or raise ConflictError."""
        if await self.names.claim(name, account.id):
            return

        owner = await self.names.lookup(name)
        if owner is None:
            # Orphaned entry was just cleaned; one retry
            if await self.names.claim(name, account.id):
                logger.info("orphan_name_reclaimed", name=name, account_id=account.id)
                return
            msg = "Display name is already taken"
            raise ConflictError(msg)

        if owner.id == account.id:
            return

        if not self._has_reclaim_evidence(name, account.email, legacy) or await self._holds_name_evidence(owner, name):
            msg = "Display name is already taken"
            raise ConflictError(msg)

        owner.display_name = None
        owner.updated_at = self.clock.now()
        await self.store.save(owner)
        await self.names.put(name, account.id)
        logger.warning("display_name_reclaimed", name=name, new_owner=account.id, previous_owner=owner.id)

    def _has_reclaim_evidence(self, name: str, email: str | None, legacy: LegacyRecord | None) -> bool:
        """Proof of prior ownership of a display name tied to the claimant.

        A legacy record that carried the name with permanent progression, or
        an allow-listed verified email. An allow-listed name alone proves
        nothing about who is claiming it.
        """
        if (
            legacy is not None
            and legacy.display_name
            and legacy.display_name.strip().lower() == name.strip().lower()
            and legacy.permanent_level > 0
        ):
            return True
        return bool(email) and self.tier_policy(email, None) > 0

    async def _holds_name_evidence(self, account: Account, name: str) -> bool:
        """Whether the current holder could prove ownership of ``name`` itself."""
        for provider, link in account.links.items():
            legacy = await self.store.get_legacy(provider, link.provider_id)
            if self._has_reclaim_evidence(name, None, legacy):
                return True
        return self._has_reclaim_evidence(name, account.email, None)

    # ------------------------------------------------------------------
    # Linking
    # ------------------------------------------------------------------

    async def link(
        self,
        account_id: str,
        provider: str,
        provider_id: str,
        provider_data: ProviderIdentity,
    ) -> LinkResult:
        """
        Link a further provider identity to an existing account.

        Raises:
            NotFoundError: Unknown account.
            ConflictError: Provider id belongs to a different account without
                matching email or legacy evidence, or the account already
                holds a different id for this provider.
        """
        self._check_provider(provider)
        account = await self.store.get(account_id)
        if account is None:
            msg = "Account not found"
            raise NotFoundError(msg)

        current = account.provider_id(provider)
        if current == provider_id:
            return LinkResult(success=True, account_id=account.id, linked_provider=provider)
        if current is not None:
            msg = f"Account is already linked to a different {provider} identity"
            raise ConflictError(msg)

        absorbed: str | None = None
        owner = await self._find_by_provider(provider, provider_id)
        if owner is not None and owner.id != account.id:
            reason = await self._link_takeover_reason(account, owner, provider, provider_id, provider_data)
            if reason is None:
                msg = f"This {provider} identity is linked to another account"
                raise ConflictError(msg)

            del owner.links[provider]
            if owner.links:
                owner.updated_at = self.clock.now()
                await self.store.save(owner)
            else:
                # Owner would become unreachable: fold its progression in
                claimant_season = account.season
                account = combine_accounts(
                    owner, account, now=self.clock.now(), audit_log_size=self.settings.anticheat_audit_log_size
                )
                await self.store.save(account)
                await self._hand_over_indexes(owner, account)
                await self.store.delete(owner.id)
                await self.leaderboard.remove(owner.season, owner.id)
                await self.leaderboard.move(claimant_season, account.season, account.id, account.xp)
                invalidate_scan_cache()
                absorbed = owner.id
            logger.info(
                "provider_link_moved",
                provider=provider,
                from_account=owner.id,
                to_account=account.id,
                reason=reason,
                absorbed=absorbed is not None,
            )

        await self._attach_link(account, provider, provider_id, provider_data)
        return LinkResult(success=True, account_id=account.id, linked_provider=provider, absorbed_account_id=absorbed)

    async def _link_takeover_reason(
        self,
        claimant: Account,
        owner: Account,
        provider: str,
        provider_id: str,
        provider_data: ProviderIdentity,
    ) -> str | None:
        claimant_emails = {normalize_email(e) for e in (claimant.email, self._verified_email(provider_data)) if e}
        if owner.email and normalize_email(owner.email) in claimant_emails:
            return "email"

        legacy = await self.store.get_legacy(provider, provider_id)
        if legacy is not None:
            if legacy.migrated_to == claimant.id:
                return "legacy"
            if claimant.display_name and self._has_reclaim_evidence(claimant.display_name, None, legacy):
                return "legacy"
        return None

    async def _attach_link(
        self,
        account: Account,
        provider: str,
        provider_id: str,
        provider_data: ProviderIdentity,
    ) -> None:
        now = self.clock.now()
        account.links[provider] = ProviderLink(
            provider=provider,
            provider_id=provider_id,
            account_id=account.id,
            linked_at=now,
            name=provider_data.name_candidate,
            tier=provider_data.subscription_tier,
        )
        account.subscription_tier = max(link.tier for link in account.links.values())
        if not account.email:
            account.email = self._verified_email(provider_data)
        account.updated_at = now
        await self.store.save(account)
        await provider_index(self.redis, self.store, provider).put(provider_id, account.id)
        if account.email:
            await self.emails.claim(account.email, account.id)

    async def _hand_over_indexes(self, source: Account, target: Account) -> None:
        """Re-point ``source``'s index entries at ``target`` where it took the value over, else release them."""
        for provider, link in source.links.items():
            if target.provider_id(provider) == link.provider_id:
                await provider_index(self.redis, self.store, provider).put(link.provider_id, target.id)
            else:
                await provider_index(self.redis, self.store, provider).release(link.provider_id, source.id)
        if source.display_name:
            if target.display_name == source.display_name:
                await self.names.put(source.display_name, target.id)
            else:
                await self.names.release(source.display_name, source.id)
        if source.email:
            if target.email and normalize_email(target.email) == normalize_email(source.email):
                await self.emails.put(source.email, target.id)
            else:
                await self.emails.release(source.email, source.id)

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    async def lookup_by_name(self, display_name: str) -> Account | None:
        """Public lookup by display name through the self-healing index."""
        try:
            return await self.names.lookup(display_name)
        except RedisError:
            logger.warning("name_lookup_store_unavailable", exc_info=True)
            return None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _check_provider(provider: str) -> None:
        if provider not in PROVIDERS:
            msg = f"Unknown provider: {provider}"
            raise ValidationError(msg)

    @staticmethod
    def _verified_email(identity: ProviderIdentity) -> str | None:
        if identity.email and identity.verified:
            return normalize_email(identity.email)
        return None
