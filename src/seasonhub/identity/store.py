"""Redis key layout and account record persistence.

Each account is one JSON string under ``account:{id}``. Secondary indexes
are plain string keys holding an account id and are NOT written in the
same transaction as the record; see ``identity.index``.
"""

from __future__ import annotations

import time
from collections.abc import AsyncIterator
from datetime import datetime

import structlog
from pydantic import ValidationError as PydanticValidationError
from redis.asyncio import Redis
from redis.asyncio.client import Pipeline

from seasonhub.identity.models import Account, LegacyRecord

logger = structlog.get_logger()

ACCOUNT_PREFIX = "account:"


def account_key(account_id: str) -> str:
    return f"{ACCOUNT_PREFIX}{account_id}"


def provider_index_key(provider: str, provider_id: str) -> str:
    return f"idx:provider:{provider}:{provider_id}"


def email_index_key(email: str) -> str:
    return f"idx:email:{normalize_email(email)}"


def name_index_key(display_name: str) -> str:
    return f"idx:name:{display_name.strip().lower()}"


def legacy_key(provider: str, provider_id: str) -> str:
    return f"legacy:{provider}:{provider_id}"


def normalize_email(email: str) -> str:
    return email.strip().lower()


class AccountStore:
    """Load, save and delete account records."""

    def __init__(self, redis: Redis) -> None:
        self.redis = redis

    async def get(self, account_id: str) -> Account | None:
        raw = await self.redis.get(account_key(account_id))
        if raw is None:
            return None
        try:
            return Account.model_validate_json(raw)
        except PydanticValidationError:
            logger.error("account_record_corrupt", account_id=account_id, exc_info=True)
            return None

    async def save(self, account: Account) -> None:
        await self.redis.set(account_key(account.id), account.model_dump_json())

    async def touch_last_seen(self, account_id: str, seen: datetime) -> bool:
        """Set ``last_seen`` alone; retried whenever the record changes before the write lands."""
        key = account_key(account_id)

        async def update(pipe: Pipeline) -> bool:
            raw = await pipe.get(key)
            if raw is None:
                return False
            try:
                account = Account.model_validate_json(raw)
            except PydanticValidationError:
                logger.error("account_record_corrupt", account_id=account_id, exc_info=True)
                return False
            account.last_seen = seen
            pipe.multi()
            pipe.set(key, account.model_dump_json())
            return True

        return await self.redis.transaction(update, key, value_from_callable=True)

    async def delete(self, account_id: str) -> None:
        await self.redis.delete(account_key(account_id))

    async def get_many(self, account_ids: list[str]) -> dict[str, Account]:
        """Batch-load accounts; missing or corrupt ids are skipped."""
        if not account_ids:
            return {}
        raws = await self.redis.mget([account_key(a) for a in account_ids])
        accounts: dict[str, Account] = {}
        for account_id, raw in zip(account_ids, raws):
            if raw is None:
                continue
            try:
                accounts[account_id] = Account.model_validate_json(raw)
            except PydanticValidationError:
                logger.error("account_record_corrupt", account_id=account_id)
        return accounts

    async def scan(self, budget_seconds: float) -> AsyncIterator[Account]:
        """Iterate every account until the wall-clock budget is spent.

        Raises TimeoutError when the budget runs out before the scan
        completes, so callers can tell a partial scan from a full one.
        """
        deadline = time.monotonic() + budget_seconds
        async for key in self.redis.scan_iter(match=f"{ACCOUNT_PREFIX}*", count=500):
            if time.monotonic() > deadline:
                raise TimeoutError("account scan budget exhausted")
            raw = await self.redis.get(key)
            if raw is None:
                continue
            try:
                yield Account.model_validate_json(raw)
            except PydanticValidationError:
                continue

    async def get_legacy(self, provider: str, provider_id: str) -> LegacyRecord | None:
        raw = await self.redis.get(legacy_key(provider, provider_id))
        if raw is None:
            return None
        try:
            return LegacyRecord.model_validate_json(raw)
        except PydanticValidationError:
            logger.warning("legacy_record_corrupt", provider=provider, provider_id=provider_id)
            return None

    async def save_legacy(self, record: LegacyRecord) -> None:
        await self.redis.set(legacy_key(record.provider, record.provider_id), record.model_dump_json())
