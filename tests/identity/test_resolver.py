"""Identity resolution, registration and lazy legacy migration."""

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from seasonhub.config import get_settings
from seasonhub.errors import ConflictError, ValidationError
from seasonhub.identity.models import LegacyRecord, ProviderIdentity
from seasonhub.identity.policy import allowlist_policy
from seasonhub.identity.resolver import IdentityResolver
from seasonhub.identity.scan import invalidate_scan_cache
from seasonhub.identity.store import email_index_key, name_index_key, provider_index_key


def identity(provider, provider_id, email=None, **kwargs):
    return ProviderIdentity(
        provider=provider, provider_id=provider_id, email=email, verified=email is not None, **kwargs
    )


async def _register(resolver, name="Nova", provider="discord", provider_id="d-1", email=None):
    result = await resolver.register(name, provider, provider_id, identity(provider, provider_id, email=email))
    return result.account_id


class TestResolve:
    @pytest.mark.asyncio
    async def test_unknown_identity_needs_registration(self, resolver):
        result = await resolver.resolve("discord", "nobody")
        assert result.exists is False
        assert result.needs_registration is True
        assert result.legacy is None

    @pytest.mark.asyncio
    async def test_registered_identity_resolves_through_index(self, resolver):
        account_id = await _register(resolver)
        result = await resolver.resolve("discord", "d-1")
        assert result.exists is True
        assert result.account_id == account_id
        assert result.display_name == "Nova"
        assert result.needs_registration is False
        assert result.matched_by == "index"

    @pytest.mark.asyncio
    async def test_unknown_provider_rejected(self, resolver):
        with pytest.raises(ValidationError):
            await resolver.resolve("myspace", "1")

    @pytest.mark.asyncio
    async def test_lost_index_found_by_scan_and_repaired(self, resolver, redis):
        account_id = await _register(resolver)
        await redis.delete(provider_index_key("discord", "d-1"))
        invalidate_scan_cache()

        result = await resolver.resolve("discord", "d-1")
        assert result.matched_by == "scan"
        assert result.account_id == account_id
        assert await redis.get(provider_index_key("discord", "d-1")) == account_id

    @pytest.mark.asyncio
    async def test_scan_over_budget_degrades_to_not_found(self, resolver, redis, clock):
        await _register(resolver)
        await redis.delete(provider_index_key("discord", "d-1"))
        invalidate_scan_cache()

        hurried = IdentityResolver(redis, get_settings().model_copy(update={"scan_budget_seconds": -1}), clock=clock)
        result = await hurried.resolve("discord", "d-1")
        assert result.exists is False
        assert result.needs_registration is True

    @pytest.mark.asyncio
    async def test_dangling_index_entry_removed(self, resolver, redis):
        await redis.set(provider_index_key("discord", "d-ghost"), "ghost")
        result = await resolver.resolve("discord", "d-ghost")
        assert result.exists is False
        assert await redis.get(provider_index_key("discord", "d-ghost")) is None

    @pytest.mark.asyncio
    async def test_stale_index_entry_removed(self, resolver, redis, make_account):
        await make_account("acct-1", provider_id="d-1")
        await redis.set(provider_index_key("discord", "d-2"), "acct-1")
        result = await resolver.resolve("discord", "d-2")
        assert result.exists is False
        assert await redis.get(provider_index_key("discord", "d-2")) is None

    @pytest.mark.asyncio
    async def test_index_written_but_link_lost_is_adopted(self, resolver, redis, store, make_account):
        await make_account("acct-1", provider_id=None)
        await redis.set(provider_index_key("discord", "d-9"), "acct-1")
        result = await resolver.resolve("discord", "d-9")
        assert result.account_id == "acct-1"
        assert (await store.get("acct-1")).provider_id("discord") == "d-9"

    @pytest.mark.asyncio
    async def test_store_failure_degrades_instead_of_raising(self, resolver, redis, monkeypatch):
        async def broken(*args, **kwargs):
            raise RedisConnectionError("connection refused")

        monkeypatch.setattr(redis, "get", broken)
        result = await resolver.resolve("discord", "d-1")
        assert result.exists is False
        assert result.needs_registration is True

    @pytest.mark.asyncio
    async def test_missing_name_and_email_index_healed(self, resolver, redis):
        account_id = await _register(resolver, email="nova@example.com")
        await redis.delete(name_index_key("Nova"), email_index_key("nova@example.com"))
        await resolver.resolve("discord", "d-1")
        assert await redis.get(name_index_key("nova")) == account_id
        assert await redis.get(email_index_key("nova@example.com")) == account_id

    @pytest.mark.asyncio
    async def test_duplicate_name_holder_loses_name(self, resolver, redis, make_account):
        await make_account("acct-x", provider_id="d-x", display_name="Nova")
        await make_account("acct-y", provider_id="d-y", display_name="Nova")
        await redis.set(name_index_key("Nova"), "acct-x")
        await redis.set(provider_index_key("discord", "d-y"), "acct-y")

        result = await resolver.resolve("discord", "d-y")
        assert result.display_name is None
        assert result.needs_registration is True
        assert await redis.get(name_index_key("Nova")) == "acct-x"


class TestEmailSoftMatch:
    @pytest.mark.asyncio
    async def test_second_provider_linked_by_verified_email(self, resolver):
        account_id = await _register(resolver, email="nova@example.com")

        result = await resolver.resolve("patreon", "p-1", email="NOVA@example.com")
        assert result.matched_by == "email"
        assert result.account_id == account_id

        again = await resolver.resolve("patreon", "p-1")
        assert again.matched_by == "index"
        assert again.account_id == account_id

    @pytest.mark.asyncio
    async def test_no_match_for_unknown_email(self, resolver):
        await _register(resolver, email="nova@example.com")
        result = await resolver.resolve("patreon", "p-1", email="other@example.com")
        assert result.exists is False


class TestRegister:
    @pytest.mark.asyncio
    async def test_creates_record_and_indexes(self, resolver, store, redis, clock):
        account_id = await _register(resolver, email=" Nova@Example.com ")
        account = await store.get(account_id)
        assert account.display_name == "Nova"
        assert account.email == "nova@example.com"
        assert account.season == "2026-01"
        assert (account.level, account.xp) == (1, 0)
        assert account.created_at == clock.now()
        assert await redis.get(name_index_key("NOVA")) == account_id
        assert await redis.get(provider_index_key("discord", "d-1")) == account_id
        assert await redis.get(email_index_key("nova@example.com")) == account_id

    @pytest.mark.asyncio
    async def test_unverified_email_not_stored(self, resolver, store):
        ident = identity("discord", "d-1", email="nova@example.com").model_copy(update={"verified": False})
        result = await resolver.register("Nova", "discord", "d-1", ident)
        assert (await store.get(result.account_id)).email is None

    @pytest.mark.parametrize("name", ["ab", "x" * 21, "has space", "emoji🙂", ""])
    @pytest.mark.asyncio
    async def test_invalid_names_rejected(self, resolver, name):
        with pytest.raises(ValidationError):
            await _register(resolver, name=name)

    @pytest.mark.asyncio
    async def test_name_taken_case_insensitively(self, resolver, redis):
        await _register(resolver, name="Nova")
        with pytest.raises(ConflictError):
            await _register(resolver, name="NOVA", provider_id="d-2")
        # The failed attempt leaves no account record or provider index behind
        assert await redis.get(provider_index_key("discord", "d-2")) is None
        assert len([k async for k in redis.scan_iter(match="account:*")]) == 1

    @pytest.mark.asyncio
    async def test_same_identity_twice(self, resolver):
        await _register(resolver)
        with pytest.raises(ConflictError):
            await _register(resolver, name="Orion")

    @pytest.mark.asyncio
    async def test_name_freed_after_holder_deleted(self, resolver, redis, store):
        x = await _register(resolver, name="Nova", provider_id="d-x")
        with pytest.raises(ConflictError):
            await _register(resolver, name="Nova", provider_id="d-y")

        await store.delete(x)
        y = await _register(resolver, name="Nova", provider_id="d-y")
        assert await redis.get(name_index_key("Nova")) == y
        assert await resolver.is_name_available("nova") is False

    @pytest.mark.asyncio
    async def test_tier_floor_from_policy(self, redis, clock, store):
        resolver = IdentityResolver(
            redis, get_settings(), clock=clock, tier_policy=allowlist_policy(["og@example.com"], [], floor=2)
        )
        account_id = await _register(resolver, email="og@example.com")
        account = await store.get(account_id)
        assert account.tier_floor == 2
        assert account.effective_tier == 2

    @pytest.mark.asyncio
    async def test_allowlisted_email_reclaims_name_from_squatter(self, redis, clock, store):
        plain = IdentityResolver(redis, get_settings(), clock=clock)
        squatter = await _register(plain, name="Nova", provider_id="d-squat")

        og = IdentityResolver(
            redis, get_settings(), clock=clock, tier_policy=allowlist_policy(["og@example.com"], [], floor=1)
        )
        owner = await _register(og, name="Nova", provider_id="d-og", email="og@example.com")

        assert await redis.get(name_index_key("Nova")) == owner
        assert (await store.get(squatter)).display_name is None

    @pytest.mark.asyncio
    async def test_allowlisted_name_does_not_displace_holder(self, redis, clock, store):
        resolver = IdentityResolver(redis, get_settings(), clock=clock, tier_policy=allowlist_policy([], ["Nova"], 1))
        holder = await _register(resolver, name="Nova", provider_id="d-x")

        with pytest.raises(ConflictError):
            await _register(resolver, name="nova", provider_id="d-y")

        assert await redis.get(name_index_key("Nova")) == holder
        assert (await store.get(holder)).display_name == "Nova"

    @pytest.mark.asyncio
    async def test_holder_with_own_evidence_keeps_name(self, redis, clock, store):
        resolver = IdentityResolver(
            redis,
            get_settings(),
            clock=clock,
            tier_policy=allowlist_policy(["a@example.com", "b@example.com"], [], floor=1),
        )
        holder = await _register(resolver, name="Nova", provider_id="d-a", email="a@example.com")

        with pytest.raises(ConflictError):
            await _register(resolver, name="Nova", provider_id="d-b", email="b@example.com")
        assert await redis.get(name_index_key("Nova")) == holder


class TestLegacyMigration:
    def _legacy(self, **fields) -> LegacyRecord:
        data = {
            "provider": "discord",
            "provider_id": "d-old",
            "display_name": "OldTimer",
            "xp": 50_000,
            "level": 30,
            "highest_level_ever": 30,
            "achievements": ["first_flash"],
        }
        data.update(fields)
        return LegacyRecord(**data)

    @pytest.mark.asyncio
    async def test_first_resolution_migrates(self, resolver, store):
        await store.save_legacy(self._legacy())

        result = await resolver.resolve("discord", "d-old")
        assert result.exists is True
        assert result.matched_by == "legacy"
        assert result.display_name == "OldTimer"
        assert result.legacy is not None

        account = await store.get(result.account_id)
        assert account.highest_level_ever == 30
        assert account.level == 1
        assert account.is_legacy_og is True
        assert account.achievements == ["first_flash"]
        assert (await store.get_legacy("discord", "d-old")).migrated_to == account.id

    @pytest.mark.asyncio
    async def test_second_resolution_uses_index(self, resolver, store):
        await store.save_legacy(self._legacy())
        first = await resolver.resolve("discord", "d-old")
        second = await resolver.resolve("discord", "d-old")
        assert second.account_id == first.account_id
        assert second.matched_by == "index"

    @pytest.mark.asyncio
    async def test_migrated_pointer_used_when_index_and_scan_miss(self, resolver, store, redis, clock):
        await store.save_legacy(self._legacy())
        first = await resolver.resolve("discord", "d-old")
        await redis.delete(provider_index_key("discord", "d-old"))
        invalidate_scan_cache()

        hurried = IdentityResolver(redis, get_settings().model_copy(update={"scan_budget_seconds": -1}), clock=clock)
        second = await hurried.resolve("discord", "d-old")
        assert second.account_id == first.account_id
        assert second.matched_by == "legacy"
        assert await redis.get(provider_index_key("discord", "d-old")) == first.account_id

    @pytest.mark.asyncio
    async def test_purged_migration_treated_as_new(self, resolver, store, redis):
        await store.save_legacy(self._legacy())
        first = await resolver.resolve("discord", "d-old")
        await store.delete(first.account_id)
        invalidate_scan_cache()

        result = await resolver.resolve("discord", "d-old")
        assert result.exists is False
        assert result.needs_registration is True

    @pytest.mark.asyncio
    async def test_legacy_name_reclaimed_from_squatter(self, resolver, store, redis):
        squatter = await _register(resolver, name="OldTimer", provider_id="d-squat")
        await store.save_legacy(self._legacy())

        result = await resolver.resolve("discord", "d-old")
        assert result.display_name == "OldTimer"
        assert await redis.get(name_index_key("OldTimer")) == result.account_id
        assert (await store.get(squatter)).display_name is None

        bumped = await resolver.resolve("discord", "d-squat")
        assert bumped.needs_registration is True

    @pytest.mark.asyncio
    async def test_fresh_legacy_profile_cannot_reclaim(self, resolver, store):
        holder = await _register(resolver, name="OldTimer", provider_id="d-holder")
        await store.save_legacy(self._legacy(xp=0, level=1, highest_level_ever=0))

        result = await resolver.resolve("discord", "d-old")
        assert result.exists is True
        assert result.display_name is None
        assert result.needs_registration is True
        assert (await store.get(holder)).display_name == "OldTimer"

        registered = await resolver.register("OldTimer2", "discord", "d-old", identity("discord", "d-old"))
        assert registered.account_id == result.account_id
        assert (await store.get(result.account_id)).display_name == "OldTimer2"

    @pytest.mark.asyncio
    async def test_register_with_new_name_migrates(self, resolver, store):
        await store.save_legacy(self._legacy())
        result = await resolver.register("Renamed", "discord", "d-old", identity("discord", "d-old"))
        assert result.migrated_legacy is True
        account = await store.get(result.account_id)
        assert account.display_name == "Renamed"
        assert account.highest_level_ever == 30
