"""Request/response schemas for provider authentication and linking."""

from __future__ import annotations

from pydantic import BaseModel, Field


class AuthRequest(BaseModel):
    """Already-exchanged provider bearer token, plus a display name when registering."""

    access_token: str = Field(..., min_length=1)
    display_name: str | None = None


class AuthResponse(BaseModel):
    success: bool
    account_id: str | None = None
    display_name: str | None = None
    needs_registration: bool = False
    suggested_name: str | None = None
    is_new: bool = False
    matched_by: str | None = None
    access_token: str | None = None
    token_type: str = "bearer"
    expires_in: int | None = None


class LinkRequest(BaseModel):
    provider: str
    access_token: str = Field(..., min_length=1)


class LinkResponse(BaseModel):
    success: bool
    account_id: str
    linked_provider: str
    absorbed_account_id: str | None = None
