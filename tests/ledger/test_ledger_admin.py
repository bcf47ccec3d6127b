"""Administrative override, merge, purge and archive."""

import pytest
from sqlalchemy import select

from seasonhub.db.models import SeasonSnapshot
from seasonhub.errors import NotFoundError, ValidationError
from seasonhub.identity.store import account_key, email_index_key, name_index_key, provider_index_key
from seasonhub.leaderboard.service import leaderboard_key
from seasonhub.ledger.admin import LedgerAdmin


@pytest.fixture
def admin(ledger) -> LedgerAdmin:
    return LedgerAdmin(ledger)


async def _register(resolver, provider_identity, name, provider, provider_id, email=None) -> str:
    result = await resolver.register(name, provider, provider_id, provider_identity(provider, provider_id, email=email))
    return result.account_id


class TestConfirmation:
    @pytest.mark.parametrize("confirmation", [None, "", "override", "MERGE"])
    @pytest.mark.asyncio
    async def test_wrong_keyword_rejected(self, admin, make_account, confirmation):
        await make_account("acct-1")
        with pytest.raises(ValidationError):
            await admin.override("acct-1", confirmation=confirmation, xp=10)


class TestOverride:
    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(self, admin, store, make_account):
        await make_account("acct-1", xp=5000, level=6)
        result = await admin.override("acct-1", confirmation="OVERRIDE", xp=100)
        assert result.dry_run is True
        assert result.changes["xp"] == {"from": 5000, "to": 100}
        assert result.changes["level"] == {"from": 6, "to": 1}
        stored = await store.get("acct-1")
        assert stored.xp == 5000
        assert stored.force_override is None

    @pytest.mark.asyncio
    async def test_applied_override(self, admin, store, leaderboard, make_account):
        await make_account("acct-1", xp=5000, level=6)
        await admin.override(
            "acct-1", confirmation="OVERRIDE", level=3, stats={"total_flashes": 0.0}, reason="exploit", dry_run=False
        )
        stored = await store.get("acct-1")
        assert stored.level == 3
        assert stored.xp == 5000
        assert stored.stats["total_flashes"] == 0.0
        assert stored.force_override.keys == ["level", "total_flashes"]
        assert stored.force_override.reason == "exploit"
        assert await leaderboard.score_of("2026-01", "acct-1") == 5000

    @pytest.mark.asyncio
    async def test_nothing_to_override(self, admin, make_account):
        await make_account("acct-1")
        with pytest.raises(ValidationError):
            await admin.override("acct-1", confirmation="OVERRIDE", dry_run=False)

    @pytest.mark.asyncio
    async def test_unknown_account(self, admin):
        with pytest.raises(NotFoundError):
            await admin.override("missing", confirmation="OVERRIDE", xp=1)


class TestMerge:
    @pytest.mark.asyncio
    async def test_merge_moves_links_and_deletes_source(
        self, admin, resolver, store, redis, leaderboard, provider_identity
    ):
        source = await _register(resolver, provider_identity, "Alt", "discord", "d-s")
        target = await _register(resolver, provider_identity, "Nova", "patreon", "p-t")
        record = await store.get(source)
        record.xp, record.level, record.achievements = 3000, 4, ["veteran"]
        await store.save(record)
        await leaderboard.upsert("2026-01", source, 3000)

        preview = await admin.merge(source, target, confirmation="MERGE")
        assert preview.dry_run is True
        assert preview.changes["links_moved"] == ["discord"]
        assert await store.get(source) is not None

        result = await admin.merge(source, target, confirmation="MERGE", dry_run=False)
        assert result.account_id == target
        assert await store.get(source) is None

        merged = await store.get(target)
        assert sorted(merged.links) == ["discord", "patreon"]
        assert merged.xp == 3000
        assert merged.achievements == ["veteran"]
        assert await redis.get(provider_index_key("discord", "d-s")) == target
        assert await redis.get(name_index_key("Alt")) is None
        assert await redis.get(name_index_key("Nova")) == target
        assert await leaderboard.score_of("2026-01", source) is None
        assert await leaderboard.score_of("2026-01", target) == 3000
        assert (await resolver.resolve("discord", "d-s")).account_id == target

    @pytest.mark.asyncio
    async def test_cannot_merge_into_itself(self, admin, make_account):
        await make_account("acct-1")
        with pytest.raises(ValidationError):
            await admin.merge("acct-1", "acct-1", confirmation="MERGE", dry_run=False)


class TestPurge:
    @pytest.mark.asyncio
    async def test_dry_run_lists_keys(self, admin, resolver, redis, provider_identity):
        account_id = await _register(resolver, provider_identity, "Nova", "discord", "d-1", email="nova@example.com")
        result = await admin.purge(account_id, confirmation="PURGE")
        assert set(result.changes["keys"]) == {
            account_key(account_id),
            provider_index_key("discord", "d-1"),
            name_index_key("Nova"),
            email_index_key("nova@example.com"),
        }
        assert await redis.exists(account_key(account_id))

    @pytest.mark.asyncio
    async def test_purge_removes_everything_pointing_at_account(
        self, admin, resolver, redis, leaderboard, provider_identity
    ):
        account_id = await _register(resolver, provider_identity, "Nova", "discord", "d-1", email="nova@example.com")
        await leaderboard.upsert("2026-01", account_id, 500)

        await admin.purge(account_id, confirmation="PURGE", dry_run=False)
        for key in (
            account_key(account_id),
            provider_index_key("discord", "d-1"),
            name_index_key("Nova"),
            email_index_key("nova@example.com"),
        ):
            assert await redis.get(key) is None
        assert await leaderboard.score_of("2026-01", account_id) is None
        assert (await resolver.resolve("discord", "d-1")).exists is False
        assert await resolver.is_name_available("Nova") is True

    @pytest.mark.asyncio
    async def test_purge_leaves_entries_owned_by_others(self, admin, redis, make_account):
        await make_account("acct-1", display_name="Nova")
        await redis.set(name_index_key("Nova"), "acct-2")
        await admin.purge("acct-1", confirmation="PURGE", dry_run=False)
        assert await redis.get(name_index_key("Nova")) == "acct-2"

    @pytest.mark.asyncio
    async def test_unknown_account(self, admin):
        with pytest.raises(NotFoundError):
            await admin.purge("missing", confirmation="PURGE", dry_run=False)

    @pytest.mark.asyncio
    async def test_self_delete_requires_delete_keyword(self, admin, store, make_account):
        await make_account("acct-1")
        with pytest.raises(ValidationError):
            await admin.delete_own_account("acct-1", "PURGE")
        result = await admin.delete_own_account("acct-1", "DELETE")
        assert result.dry_run is False
        assert await store.get("acct-1") is None


class TestArchive:
    @pytest.mark.asyncio
    async def test_current_season_refused(self, admin):
        with pytest.raises(ValidationError):
            await admin.archive_season("2026-01", confirmation="ARCHIVE", dry_run=False)

    @pytest.mark.parametrize("season", ["2025-13", "last-month", ""])
    @pytest.mark.asyncio
    async def test_malformed_season(self, admin, season):
        with pytest.raises(ValidationError):
            await admin.archive_season(season, confirmation="ARCHIVE")

    @pytest.mark.asyncio
    async def test_dry_run_counts_entries(self, admin, leaderboard, redis):
        await leaderboard.upsert("2025-12", "acct-1", 100)
        await leaderboard.upsert("2025-12", "acct-2", 200)
        result = await admin.archive_season("2025-12", confirmation="ARCHIVE")
        assert result.changes == {"season": "2025-12", "entries": 2}
        assert await redis.exists(leaderboard_key("2025-12"))

    @pytest.mark.asyncio
    async def test_archive_exports_and_drops_set(self, admin, leaderboard, redis, make_account, db_session):
        await make_account("acct-1", display_name="Nova")
        await make_account("acct-2", provider_id="d-2", display_name="Orion")
        await leaderboard.upsert("2025-12", "acct-1", 100)
        await leaderboard.upsert("2025-12", "acct-2", 200)

        result = await admin.archive_season("2025-12", confirmation="ARCHIVE", db=db_session, dry_run=False)
        assert result.changes["entries"] == 2
        assert not await redis.exists(leaderboard_key("2025-12"))

        rows = (await db_session.execute(select(SeasonSnapshot).order_by(SeasonSnapshot.rank))).scalars().all()
        assert [(r.account_id, r.rank, r.display_name) for r in rows] == [("acct-2", 1, "Orion"), ("acct-1", 2, "Nova")]
