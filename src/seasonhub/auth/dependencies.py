"""FastAPI authentication dependencies."""

from __future__ import annotations

import secrets

import jwt
from fastapi import Header, HTTPException, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from seasonhub.auth.jwt import verify_token
from seasonhub.config import get_settings

_bearer = HTTPBearer()


async def get_current_account_id(
    credentials: HTTPAuthorizationCredentials = Security(_bearer),
) -> str:
    """
    Extract and verify the session JWT, return the canonical account id.

    Whether the account still exists is left to the ledger, which raises
    NotFound for purged accounts.
    """
    try:
        payload = verify_token(credentials.credentials, expected_type="access")
    except jwt.InvalidTokenError as e:
        raise HTTPException(status_code=401, detail=str(e)) from e
    return str(payload["sub"])


async def require_admin(x_admin_key: str | None = Header(default=None)) -> None:
    """Gate admin endpoints on the configured ``X-Admin-Key``."""
    configured = get_settings().admin_api_key
    if not configured:
        raise HTTPException(status_code=403, detail="Admin API is disabled")
    if not x_admin_key or not secrets.compare_digest(x_admin_key, configured):
        raise HTTPException(status_code=403, detail="Invalid admin key")
