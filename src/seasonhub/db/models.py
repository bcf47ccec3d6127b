"""ORM models.

Accounts and indexes live in Redis; SQL only keeps the archived
per-season leaderboard snapshots.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Float, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from seasonhub.db.base import Base


class SeasonSnapshot(Base):
    """One ranked row of an exported season leaderboard."""

    __tablename__ = "season_snapshots"
    __table_args__ = (
        UniqueConstraint("season", "account_id", name="season_snapshots_season_account_key"),
    )

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    season: Mapped[str] = mapped_column(String(7), nullable=False, index=True)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    rank: Mapped[int] = mapped_column(Integer, nullable=False)
    score: Mapped[float] = mapped_column(Float, nullable=False)
    display_name: Mapped[str | None] = mapped_column(String(64), nullable=True)
    snapshot_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
