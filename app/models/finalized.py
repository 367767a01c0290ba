"""
Append-only audit snapshot of finalized seasons.
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import BigInteger, Boolean, Float, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import BaseModel, TokenAmount, utcnow


class FinalizedSeason(BaseModel):
    """Frozen season results. Written once, only the distribution flags change."""

    __tablename__ = "finalized_seasons"

    season_number: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)

    start_time: Mapped[datetime] = mapped_column()
    end_time: Mapped[datetime] = mapped_column()

    total_votes: Mapped[int] = mapped_column(TokenAmount)
    total_content: Mapped[int] = mapped_column(Integer, default=0)

    snapshot_hash: Mapped[str] = mapped_column(
        String(64),
        comment="SHA-256 of ordered content_id:rank:votes triples"
    )

    finalized_at: Mapped[datetime] = mapped_column(default=utcnow)

    rewards_distributed: Mapped[bool] = mapped_column(Boolean, default=False)
    distribution_completed_at: Mapped[Optional[datetime]] = mapped_column()

    entries: Mapped[List["FinalizedLeaderboardEntry"]] = relationship(
        "FinalizedLeaderboardEntry",
        back_populates="season",
        order_by="FinalizedLeaderboardEntry.rank",
        cascade="all, delete-orphan",
        lazy="selectin"
    )

    def __repr__(self) -> str:
        return f"<FinalizedSeason(season={self.season_number}, hash={self.snapshot_hash[:12]})>"


class FinalizedLeaderboardEntry(BaseModel):
    """Ranked leaderboard row of a finalized season."""

    __tablename__ = "finalized_leaderboard_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    season_number: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("finalized_seasons.season_number", ondelete="CASCADE")
    )

    content_id: Mapped[int] = mapped_column(BigInteger)
    rank: Mapped[int] = mapped_column(Integer)
    total_votes: Mapped[int] = mapped_column(TokenAmount)

    percentage_of_total: Mapped[float] = mapped_column(Float, default=0.0)

    creator_address: Mapped[Optional[str]] = mapped_column(String(42))
    title: Mapped[Optional[str]] = mapped_column(String(500))

    season: Mapped["FinalizedSeason"] = relationship("FinalizedSeason", back_populates="entries")

    __table_args__ = (
        UniqueConstraint("season_number", "rank", name="uq_finalized_entries_season_rank"),
        UniqueConstraint("season_number", "content_id", name="uq_finalized_entries_season_content"),
        Index("idx_finalized_entries_season", "season_number"),
    )

    def __repr__(self) -> str:
        return f"<FinalizedLeaderboardEntry(season={self.season_number}, rank={self.rank}, content={self.content_id})>"
