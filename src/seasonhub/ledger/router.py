"""Profile and progression router: /v2/user/* endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query

from seasonhub.anticheat.signing import verify_request_signature
from seasonhub.auth.dependencies import get_current_account_id
from seasonhub.dependencies import get_admin, get_leaderboard, get_ledger, get_resolver
from seasonhub.identity.resolver import IdentityResolver
from seasonhub.leaderboard.service import LeaderboardStore
from seasonhub.ledger.admin import LedgerAdmin
from seasonhub.ledger.schemas import (
    DeleteAccountRequest,
    DeleteAccountResponse,
    HeartbeatResponse,
    InsuranceRequest,
    ProfileResponse,
    PublicProfileResponse,
    SyncRequest,
    SyncResponse,
    profile_from_account,
)
from seasonhub.ledger.service import ProgressionLedger

router = APIRouter(prefix="/v2/user", tags=["Profile"])


@router.get("/profile", response_model=ProfileResponse)
async def get_profile(
    account_id: str = Depends(get_current_account_id),
    ledger: ProgressionLedger = Depends(get_ledger),  # noqa: B008
) -> ProfileResponse:
    """Own profile with pending flags; applies a pending season rollover."""
    outcome = await ledger.snapshot(account_id)
    return profile_from_account(outcome.account)


@router.post("/sync", response_model=SyncResponse)
async def sync_progress(
    body: SyncRequest,
    account_id: str = Depends(get_current_account_id),
    signed: bool = Depends(verify_request_signature),
    ledger: ProgressionLedger = Depends(get_ledger),  # noqa: B008
) -> SyncResponse:
    """Merge client progression into the server record."""
    outcome = await ledger.sync(account_id, body, signed=signed)
    return SyncResponse(profile=profile_from_account(outcome.account), clamped=outcome.clamped)


@router.post("/heartbeat", response_model=HeartbeatResponse)
async def heartbeat(
    account_id: str = Depends(get_current_account_id),
    ledger: ProgressionLedger = Depends(get_ledger),  # noqa: B008
) -> HeartbeatResponse:
    """Online presence ping."""
    return HeartbeatResponse(last_seen=await ledger.heartbeat(account_id))


@router.post("/insurance", response_model=ProfileResponse)
async def use_insurance(
    body: InsuranceRequest,
    account_id: str = Depends(get_current_account_id),
    _signed: bool = Depends(verify_request_signature),
    ledger: ProgressionLedger = Depends(get_ledger),  # noqa: B008
) -> ProfileResponse:
    """Debit season XP once per season."""
    outcome = await ledger.use_insurance(account_id, body.amount)
    return profile_from_account(outcome.account)


@router.post("/delete-account", response_model=DeleteAccountResponse)
async def delete_account(
    body: DeleteAccountRequest,
    account_id: str = Depends(get_current_account_id),
    admin: LedgerAdmin = Depends(get_admin),  # noqa: B008
) -> DeleteAccountResponse:
    """Purge the signed-in account. Requires ``confirmation="DELETE"``."""
    await admin.delete_own_account(account_id, body.confirmation)
    return DeleteAccountResponse(deleted=True, account_id=account_id)


@router.get("/lookup", response_model=PublicProfileResponse)
async def lookup_user(
    display_name: str = Query(..., min_length=1, max_length=64),
    resolver: IdentityResolver = Depends(get_resolver),  # noqa: B008
    leaderboard: LeaderboardStore = Depends(get_leaderboard),  # noqa: B008
) -> PublicProfileResponse:
    """Public profile by display name."""
    account = await resolver.lookup_by_name(display_name)
    if account is None or not account.display_name:
        raise HTTPException(status_code=404, detail="User not found")
    return PublicProfileResponse(
        display_name=account.display_name,
        level=account.level,
        highest_level_ever=account.highest_level_ever,
        achievements_count=len(account.achievements),
        is_legacy_og=account.is_legacy_og,
        is_online=leaderboard.is_online(account, leaderboard.clock.now()),
    )
