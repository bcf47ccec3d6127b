"""Bounded full scan used when the provider index has lost an entry.

A complete scan builds a (provider, provider_id) → account id map that is
cached in-process for a few minutes. The cache only narrows which record
to load; the record itself is always re-verified. A scan that runs out of
its time budget degrades to "not found" and is not cached.
"""

from __future__ import annotations

import time

import structlog

from seasonhub.identity.models import Account
from seasonhub.identity.store import AccountStore

logger = structlog.get_logger()

_cache: dict[tuple[str, str], str] | None = None
_cache_built_at: float = 0.0


def invalidate_scan_cache() -> None:
    global _cache, _cache_built_at  # noqa: PLW0603
    _cache = None
    _cache_built_at = 0.0


async def _build_map(store: AccountStore, budget_seconds: float) -> dict[tuple[str, str], str] | None:
    mapping: dict[tuple[str, str], str] = {}
    started = time.monotonic()
    try:
        async for account in store.scan(budget_seconds):
            for provider, link in account.links.items():
                mapping[(provider, link.provider_id)] = account.id
    except TimeoutError:
        logger.warning("account_scan_timed_out", budget_seconds=budget_seconds, partial=len(mapping))
        return None
    logger.info("account_scan_completed", entries=len(mapping), seconds=round(time.monotonic() - started, 3))
    return mapping


async def find_by_provider_scan(
    store: AccountStore,
    provider: str,
    provider_id: str,
    *,
    budget_seconds: float,
    cache_ttl_seconds: float,
) -> Account | None:
    """Locate the account linked to a provider id without using the index."""
    global _cache, _cache_built_at  # noqa: PLW0603

    if _cache is None or time.monotonic() - _cache_built_at > cache_ttl_seconds:
        mapping = await _build_map(store, budget_seconds)
        if mapping is None:
            return None
        _cache, _cache_built_at = mapping, time.monotonic()

    account_id = _cache.get((provider, provider_id))
    if account_id is None:
        return None

    account = await store.get(account_id)
    if account is None or account.provider_id(provider) != provider_id:
        # Cached entry went stale; the cache is never trusted over the record
        _cache.pop((provider, provider_id), None)
        return None
    return account
