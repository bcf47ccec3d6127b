"""Self-healing secondary indexes.

Every index is treated as a cache over the account records: a lookup
loads the account it points to and re-verifies it, deleting the entry
when it dangles (account gone) or is stale (account no longer carries
the indexed value). Repair failures are logged, never raised.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import datetime, timezone

import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError

from seasonhub.identity.models import Account, ProviderLink
from seasonhub.identity.store import (
    AccountStore,
    email_index_key,
    name_index_key,
    normalize_email,
    provider_index_key,
)

logger = structlog.get_logger()

Verifier = Callable[[Account, str], Awaitable[bool]]


class SelfHealingIndex:
    """Lookup + verify + repair for one kind of secondary index."""

    def __init__(
        self,
        redis: Redis,
        store: AccountStore,
        name: str,
        key_for: Callable[[str], str],
        verify: Verifier,
    ) -> None:
        self.redis = redis
        self.store = store
        self.name = name
        self.key_for = key_for
        self.verify = verify

    async def lookup(self, value: str) -> Account | None:
        """Return the verified account for ``value``, repairing the entry if needed."""
        key = self.key_for(value)
        account_id = await self.redis.get(key)
        if account_id is None:
            return None

        account = await self.store.get(account_id)
        if account is None:
            await self._drop(key, account_id, reason="dangling")
            return None
        if not await self.verify(account, value):
            await self._drop(key, account_id, reason="stale")
            return None
        return account

    async def owner_id(self, value: str) -> str | None:
        """Raw index read without verification."""
        return await self.redis.get(self.key_for(value))

    async def claim(self, value: str, account_id: str) -> bool:
        """Atomically point ``value`` at ``account_id`` if unclaimed."""
        return bool(await self.redis.set(self.key_for(value), account_id, nx=True))

    async def put(self, value: str, account_id: str) -> None:
        await self.redis.set(self.key_for(value), account_id)

    async def repair(self, value: str, account_id: str) -> None:
        """Best-effort rewrite of an entry found missing or wrong."""
        try:
            await self.redis.set(self.key_for(value), account_id)
            logger.info("index_repaired", index=self.name, value=value, account_id=account_id)
        except RedisError:
            logger.warning("index_repair_failed", index=self.name, value=value, exc_info=True)

    async def release(self, value: str, account_id: str) -> None:
        """Delete the entry only while it still points at ``account_id``."""
        key = self.key_for(value)
        try:
            current = await self.redis.get(key)
            if current == account_id:
                await self.redis.delete(key)
        except RedisError:
            logger.warning("index_release_failed", index=self.name, value=value, exc_info=True)

    async def _drop(self, key: str, account_id: str, *, reason: str) -> None:
        try:
            # Another writer may have re-pointed the key since we read it
            if await self.redis.get(key) == account_id:
                await self.redis.delete(key)
            logger.info("index_entry_dropped", index=self.name, key=key, account_id=account_id, reason=reason)
        except RedisError:
            logger.warning("index_drop_failed", index=self.name, key=key, exc_info=True)


async def _name_matches(account: Account, value: str) -> bool:
    return bool(account.display_name) and account.display_name.lower() == value.strip().lower()


async def _email_matches(account: Account, value: str) -> bool:
    return bool(account.email) and normalize_email(account.email) == normalize_email(value)


def name_index(redis: Redis, store: AccountStore) -> SelfHealingIndex:
    return SelfHealingIndex(redis, store, "name", name_index_key, _name_matches)


def email_index(redis: Redis, store: AccountStore) -> SelfHealingIndex:
    return SelfHealingIndex(redis, store, "email", email_index_key, _email_matches)


def provider_index(redis: Redis, store: AccountStore, provider: str) -> SelfHealingIndex:
    """Index for one provider kind.

    An account that has no link for this provider adopts the entry (the
    index was written but the record update was lost); an account linked
    to a different id means the entry is stale.
    """

    async def verify(account: Account, provider_id: str) -> bool:
        current = account.provider_id(provider)
        if current == provider_id:
            return True
        if current is None:
            account.links[provider] = ProviderLink(
                provider=provider,
                provider_id=provider_id,
                account_id=account.id,
                linked_at=datetime.now(timezone.utc),
            )
            try:
                await store.save(account)
                logger.info("provider_link_adopted", provider=provider, provider_id=provider_id, account_id=account.id)
            except RedisError:
                logger.warning("provider_link_adopt_failed", account_id=account.id, exc_info=True)
            return True
        return False

    return SelfHealingIndex(
        redis,
        store,
        f"provider:{provider}",
        lambda provider_id: provider_index_key(provider, provider_id),
        verify,
    )
