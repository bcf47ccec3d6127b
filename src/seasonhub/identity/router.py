"""Provider authentication router: /v2/auth/* endpoints."""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends
from httpx import AsyncBaseTransport

from seasonhub.auth.dependencies import get_current_account_id
from seasonhub.auth.jwt import create_access_token
from seasonhub.config import get_settings
from seasonhub.dependencies import get_provider_transport, get_resolver
from seasonhub.identity.providers import get_provider_client
from seasonhub.identity.resolver import IdentityResolver
from seasonhub.identity.schemas import AuthRequest, AuthResponse, LinkRequest, LinkResponse

logger = structlog.get_logger()

router = APIRouter(prefix="/v2/auth", tags=["Authentication"])


def _session(account_id: str, provider: str, display_name: str | None, **extra: object) -> AuthResponse:
    settings = get_settings()
    return AuthResponse(
        success=True,
        account_id=account_id,
        display_name=display_name,
        access_token=create_access_token(account_id, provider),
        expires_in=settings.jwt_access_token_expire_minutes * 60,
        **extra,  # type: ignore[arg-type]
    )


@router.post("/link", response_model=LinkResponse)
async def link_provider(
    body: LinkRequest,
    account_id: str = Depends(get_current_account_id),
    resolver: IdentityResolver = Depends(get_resolver),  # noqa: B008
    transport: AsyncBaseTransport | None = Depends(get_provider_transport),  # noqa: B008
) -> LinkResponse:
    """Link a second provider identity to the signed-in account."""
    client = get_provider_client(body.provider, get_settings(), transport=transport)
    identity = await client.fetch_identity(body.access_token)
    result = await resolver.link(account_id, body.provider, identity.provider_id, identity)
    return LinkResponse(**result.model_dump())


@router.post("/{provider}", response_model=AuthResponse)
async def authenticate(
    provider: str,
    body: AuthRequest,
    resolver: IdentityResolver = Depends(get_resolver),  # noqa: B008
    transport: AsyncBaseTransport | None = Depends(get_provider_transport),  # noqa: B008
) -> AuthResponse:
    """
    Exchange a provider token for a session.

    Unknown identities get ``needs_registration`` back and must call again
    with a ``display_name``.
    """
    client = get_provider_client(provider, get_settings(), transport=transport)
    identity = await client.fetch_identity(body.access_token)
    email = identity.email if identity.verified else None

    result = await resolver.resolve(provider, identity.provider_id, email)
    if result.exists and not result.needs_registration and result.account_id:
        logger.info("session_opened", provider=provider, account_id=result.account_id, matched_by=result.matched_by)
        return _session(result.account_id, provider, result.display_name, matched_by=result.matched_by)

    if not body.display_name:
        suggested = result.legacy.display_name if result.legacy and result.legacy.display_name else None
        return AuthResponse(
            success=True,
            account_id=result.account_id,
            needs_registration=True,
            suggested_name=suggested or identity.name_candidate,
        )

    registered = await resolver.register(body.display_name, provider, identity.provider_id, identity)
    name = resolver.validate_display_name(body.display_name)
    return _session(registered.account_id, provider, name, is_new=not result.exists)
