"""
Season Cache Store: durable mirror of voting ledger data.

All writes are idempotent upserts keyed by season, content and voter, so a
re-sync can run any number of times.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import dialect_insert
from app.models.season import SeasonCache, ContentVoteCache, VoterVoteCache
from app.services.chain_reader import SeasonInfo


logger = structlog.get_logger(__name__)


@dataclass
class UpsertStats:
    inserted: int = 0
    updated: int = 0

    @property
    def total(self) -> int:
        return self.inserted + self.updated


class SeasonCacheStore:
    """Upserts and queries over the cached vote tables."""

    def __init__(self):
        self.logger = logger.bind(service="season_cache")

    async def upsert_season(
        self,
        session: AsyncSession,
        info: SeasonInfo,
        total_voters: Optional[int] = None
    ) -> None:
        now = datetime.now(timezone.utc)
        values = {
            "season_number": info.season_number,
            "start_time": info.start_time,
            "end_time": info.end_time,
            "total_votes": info.total_votes,
            "finalized": info.finalized,
            "last_synced_at": now,
            "created_at": now,
            "updated_at": now,
        }
        if total_voters is not None:
            values["total_voters"] = total_voters

        stmt = dialect_insert(session, SeasonCache).values(**values)
        update_columns = {
            key: getattr(stmt.excluded, key)
            for key in values
            if key not in ("season_number", "created_at")
        }
        stmt = stmt.on_conflict_do_update(index_elements=["season_number"], set_=update_columns)
        await session.execute(stmt)

    async def get_season(self, session: AsyncSession, season_number: int) -> Optional[SeasonCache]:
        return await session.get(SeasonCache, season_number)

    async def upsert_content_totals(
        self,
        session: AsyncSession,
        season_number: int,
        totals: Iterable[Tuple[int, int]],
        voter_counts: Optional[Dict[int, int]] = None
    ) -> UpsertStats:
        """Upsert (content_id, total_votes) pairs for a season."""
        existing = set(await self.get_content_totals(session, season_number))
        voter_counts = voter_counts or {}
        stats = UpsertStats()
        now = datetime.now(timezone.utc)

        for content_id, total_votes in totals:
            stmt = dialect_insert(session, ContentVoteCache).values(
                season_number=season_number,
                content_id=content_id,
                total_votes=total_votes,
                voter_count=voter_counts.get(content_id, 0),
                last_updated=now
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["season_number", "content_id"],
                set_={
                    "total_votes": stmt.excluded.total_votes,
                    "voter_count": stmt.excluded.voter_count,
                    "last_updated": stmt.excluded.last_updated,
                }
            )
            await session.execute(stmt)

            if content_id in existing:
                stats.updated += 1
            else:
                stats.inserted += 1
                existing.add(content_id)

        self.logger.debug(
            "Content totals upserted",
            season_number=season_number,
            inserted=stats.inserted,
            updated=stats.updated
        )
        return stats

    async def upsert_voter_votes(
        self,
        session: AsyncSession,
        season_number: int,
        content_id: int,
        voter_address: str,
        votes: int
    ) -> None:
        stmt = dialect_insert(session, VoterVoteCache).values(
            season_number=season_number,
            content_id=content_id,
            voter_address=voter_address,
            votes=votes
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["season_number", "content_id", "voter_address"],
            set_={"votes": stmt.excluded.votes}
        )
        await session.execute(stmt)

    async def get_content_totals(self, session: AsyncSession, season_number: int) -> Dict[int, int]:
        result = await session.execute(
            select(ContentVoteCache.content_id, ContentVoteCache.total_votes)
            .where(ContentVoteCache.season_number == season_number)
        )
        return {content_id: total_votes for content_id, total_votes in result.all()}

    async def get_cached_total(self, session: AsyncSession, season_number: int) -> int:
        """Sum of cached per-content totals. Summed here since amounts are stored as text on SQLite."""
        totals = await self.get_content_totals(session, season_number)
        return sum(totals.values())

    async def get_voter_counts(self, session: AsyncSession, season_number: int) -> Dict[int, int]:
        result = await session.execute(
            select(VoterVoteCache.content_id, func.count(VoterVoteCache.id))
            .where(VoterVoteCache.season_number == season_number)
            .group_by(VoterVoteCache.content_id)
        )
        return {content_id: count for content_id, count in result.all()}

    async def get_supporters(
        self,
        session: AsyncSession,
        season_number: int,
        content_id: int
    ) -> List[Tuple[str, int]]:
        """Voters of a content item with their votes, ordered by address."""
        result = await session.execute(
            select(VoterVoteCache.voter_address, VoterVoteCache.votes)
            .where(
                VoterVoteCache.season_number == season_number,
                VoterVoteCache.content_id == content_id
            )
            .order_by(VoterVoteCache.voter_address)
        )
        return [(voter, votes) for voter, votes in result.all() if votes > 0]

    async def get_unique_voter_count(self, session: AsyncSession, season_number: int) -> int:
        result = await session.execute(
            select(func.count(func.distinct(VoterVoteCache.voter_address)))
            .where(VoterVoteCache.season_number == season_number)
        )
        return result.scalar_one()
