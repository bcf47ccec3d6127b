"""Administrative router: /v2/admin/* endpoints, gated on X-Admin-Key."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from seasonhub.auth.dependencies import require_admin
from seasonhub.database import get_session
from seasonhub.dependencies import get_admin
from seasonhub.ledger.admin import AdminResult, LedgerAdmin

router = APIRouter(prefix="/v2/admin", tags=["Admin"], dependencies=[Depends(require_admin)])


class OverrideRequest(BaseModel):
    account_id: str
    xp: int | None = None
    level: int | None = None
    stats: dict[str, float] | None = None
    reason: str | None = None
    confirmation: str | None = None
    dry_run: bool = True


class MergeRequest(BaseModel):
    source_account_id: str
    target_account_id: str
    confirmation: str | None = None
    dry_run: bool = True


class PurgeRequest(BaseModel):
    account_id: str
    confirmation: str | None = None
    dry_run: bool = True


class ArchiveRequest(BaseModel):
    confirmation: str | None = None
    dry_run: bool = True


@router.post("/override", response_model=AdminResult)
async def override(body: OverrideRequest, admin: LedgerAdmin = Depends(get_admin)) -> AdminResult:  # noqa: B008
    return await admin.override(
        body.account_id,
        confirmation=body.confirmation,
        xp=body.xp,
        level=body.level,
        stats=body.stats,
        reason=body.reason,
        dry_run=body.dry_run,
    )


@router.post("/merge", response_model=AdminResult)
async def merge(body: MergeRequest, admin: LedgerAdmin = Depends(get_admin)) -> AdminResult:  # noqa: B008
    return await admin.merge(
        body.source_account_id,
        body.target_account_id,
        confirmation=body.confirmation,
        dry_run=body.dry_run,
    )


@router.post("/purge", response_model=AdminResult)
async def purge(body: PurgeRequest, admin: LedgerAdmin = Depends(get_admin)) -> AdminResult:  # noqa: B008
    return await admin.purge(body.account_id, confirmation=body.confirmation, dry_run=body.dry_run)


@router.post("/seasons/{season}/archive", response_model=AdminResult)
async def archive_season(
    season: str,
    body: ArchiveRequest,
    admin: LedgerAdmin = Depends(get_admin),  # noqa: B008
    db: AsyncSession = Depends(get_session),  # noqa: B008
) -> AdminResult:
    """Export a finished season to SQL and drop its Redis leaderboard."""
    return await admin.archive_season(season, confirmation=body.confirmation, db=db, dry_run=body.dry_run)
