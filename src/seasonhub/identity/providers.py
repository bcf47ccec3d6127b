"""Identity provider clients.

Each client turns an already-exchanged OAuth bearer token into a
``ProviderIdentity``. HTTP 401/403 becomes ``UnauthorizedError``; any
other failure becomes ``UnavailableError``.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from seasonhub.config import Settings
from seasonhub.errors import UnauthorizedError, UnavailableError, ValidationError
from seasonhub.identity.models import PROVIDERS, ProviderIdentity

logger = structlog.get_logger()


class BaseProviderClient:
    """Shared request/translation logic."""

    provider = ""

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def _get_json(self, path: str, access_token: str, params: dict[str, str] | None = None) -> dict[str, Any]:
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            ) as client:
                response = await client.get(
                    path,
                    params=params,
                    headers={"Authorization": f"Bearer {access_token}"},
                )
        except httpx.HTTPError as e:
            logger.warning("provider_request_failed", provider=self.provider, error=str(e))
            msg = f"{self.provider} is unreachable"
            raise UnavailableError(msg) from e

        if response.status_code in (401, 403):
            msg = f"{self.provider} rejected the access token"
            raise UnauthorizedError(msg)
        if response.status_code >= 400:
            logger.warning("provider_error_status", provider=self.provider, status=response.status_code)
            msg = f"{self.provider} returned HTTP {response.status_code}"
            raise UnavailableError(msg)

        try:
            payload: dict[str, Any] = response.json()
        except ValueError as e:
            msg = f"{self.provider} returned a malformed response"
            raise UnavailableError(msg) from e
        return payload

    async def fetch_identity(self, access_token: str) -> ProviderIdentity:
        raise NotImplementedError


class DiscordClient(BaseProviderClient):
    provider = "discord"

    async def fetch_identity(self, access_token: str) -> ProviderIdentity:
        data = await self._get_json("/users/@me", access_token)
        if not data.get("id"):
            msg = "discord returned no user id"
            raise UnavailableError(msg)
        return ProviderIdentity(
            provider=self.provider,
            provider_id=str(data["id"]),
            name_candidate=data.get("global_name") or data.get("username"),
            email=data.get("email"),
            verified=bool(data.get("verified")),
        )


class PatreonClient(BaseProviderClient):
    provider = "patreon"

    def __init__(
        self,
        base_url: str,
        tier_thresholds_cents: list[int],
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(base_url, timeout=timeout, transport=transport)
        self.tier_thresholds_cents = sorted(tier_thresholds_cents)

    def tier_for_amount(self, cents: int) -> int:
        """Tier = number of thresholds the pledge meets."""
        return sum(1 for threshold in self.tier_thresholds_cents if cents >= threshold)

    async def fetch_identity(self, access_token: str) -> ProviderIdentity:
        data = await self._get_json(
            "/identity",
            access_token,
            params={
                "include": "memberships",
                "fields[user]": "email,full_name,is_email_verified",
                "fields[member]": "patron_status,currently_entitled_amount_cents",
            },
        )
        user = data.get("data") or {}
        if not user.get("id"):
            msg = "patreon returned no user id"
            raise UnavailableError(msg)
        attributes = user.get("attributes") or {}

        tier = 0
        for member in data.get("included") or []:
            if member.get("type") != "member":
                continue
            member_attrs = member.get("attributes") or {}
            if member_attrs.get("patron_status") != "active_patron":
                continue
            cents = int(member_attrs.get("currently_entitled_amount_cents") or 0)
            tier = max(tier, self.tier_for_amount(cents))

        return ProviderIdentity(
            provider=self.provider,
            provider_id=str(user["id"]),
            name_candidate=attributes.get("full_name"),
            email=attributes.get("email"),
            verified=bool(attributes.get("is_email_verified")),
            subscription_tier=tier,
        )


def get_provider_client(
    provider: str,
    settings: Settings,
    transport: httpx.AsyncBaseTransport | None = None,
) -> BaseProviderClient:
    """Build the client for a provider kind."""
    if provider not in PROVIDERS:
        msg = f"Unknown provider: {provider}"
        raise ValidationError(msg)
    if provider == "discord":
        return DiscordClient(
            settings.discord_api_base_url, timeout=settings.provider_timeout_seconds, transport=transport
        )
    return PatreonClient(
        settings.patreon_api_base_url,
        settings.patreon_tier_thresholds_cents,
        timeout=settings.provider_timeout_seconds,
        transport=transport,
    )
