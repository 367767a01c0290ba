"""
Cached mirror of voting ledger data.

Rows here are written by idempotent upserts from the chain reader and are
the off-chain side of reconciliation.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger, Boolean, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin, TokenAmount, utcnow


class SeasonCache(BaseModel, TimestampMixin):
    """Season metadata as last read from the voting ledger."""

    __tablename__ = "seasons_cache"

    season_number: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)

    start_time: Mapped[datetime] = mapped_column(comment="Season start")
    end_time: Mapped[datetime] = mapped_column(comment="Season end")

    total_votes: Mapped[int] = mapped_column(
        TokenAmount,
        default=0,
        comment="Season vote total reported by the ledger"
    )

    total_voters: Mapped[int] = mapped_column(Integer, default=0)

    finalized: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        comment="Season closed on-chain"
    )

    last_synced_at: Mapped[Optional[datetime]] = mapped_column(
        comment="Last successful ledger read"
    )

    def __repr__(self) -> str:
        return f"<SeasonCache(season={self.season_number}, votes={self.total_votes}, finalized={self.finalized})>"


class ContentVoteCache(BaseModel):
    """Per-content vote total for a season."""

    __tablename__ = "content_votes_cache"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    season_number: Mapped[int] = mapped_column(Integer)
    content_id: Mapped[int] = mapped_column(BigInteger)

    total_votes: Mapped[int] = mapped_column(TokenAmount, default=0)

    voter_count: Mapped[int] = mapped_column(Integer, default=0)

    last_updated: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("season_number", "content_id", name="uq_content_votes_season_content"),
        Index("idx_content_votes_season", "season_number"),
    )

    def __repr__(self) -> str:
        return f"<ContentVoteCache(season={self.season_number}, content={self.content_id}, votes={self.total_votes})>"


class VoterVoteCache(BaseModel):
    """Votes one voter cast for one content item in a season."""

    __tablename__ = "voter_votes_cache"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    season_number: Mapped[int] = mapped_column(Integer)
    content_id: Mapped[int] = mapped_column(BigInteger)

    voter_address: Mapped[str] = mapped_column(
        String(42),
        comment="Voter wallet address"
    )

    votes: Mapped[int] = mapped_column(TokenAmount, default=0)

    __table_args__ = (
        UniqueConstraint(
            "season_number", "content_id", "voter_address",
            name="uq_voter_votes_season_content_voter"
        ),
        Index("idx_voter_votes_season_content", "season_number", "content_id"),
    )

    def __repr__(self) -> str:
        return f"<VoterVoteCache(season={self.season_number}, content={self.content_id}, voter={self.voter_address})>"
