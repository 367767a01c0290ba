"""
Finalized-season snapshots.

Ranks a leaderboard deterministically, hashes it, and writes the
append-only audit record of a finalized season.
"""

import hashlib
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Sequence, Tuple

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import ReconciliationError, SnapshotNotFoundError, TransportError
from app.models.finalized import FinalizedSeason, FinalizedLeaderboardEntry
from app.services.chain_reader import ChainReader, SeasonInfo
from app.services.rewards.types import RankedEntry


logger = structlog.get_logger(__name__)

# Seasons checked behind the current one when looking for new finalizations
FINALIZATION_LOOKBACK = 5


def rank_leaderboard(pairs: Iterable[Tuple[int, int]]) -> List[RankedEntry]:
    """Rank (content_id, votes) pairs: votes descending, ties by content_id ascending."""
    ordered = sorted(pairs, key=lambda pair: (-pair[1], pair[0]))
    return [
        RankedEntry(content_id=content_id, total_votes=votes, rank=index + 1)
        for index, (content_id, votes) in enumerate(ordered)
    ]


def compute_snapshot_hash(entries: Sequence[RankedEntry]) -> str:
    """SHA-256 hex of content_id:rank:votes triples joined by '|', in rank order."""
    payload = "|".join(
        f"{entry.content_id}:{entry.rank}:{entry.total_votes}"
        for entry in sorted(entries, key=lambda e: e.rank)
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def percentage_of_total(votes: int, total_votes: int) -> float:
    if total_votes <= 0:
        return 0.0
    return round(votes * 100 / total_votes, 2)


class SnapshotService:
    """Reads and writes finalized_seasons and their leaderboard entries."""

    def __init__(self):
        self.logger = logger.bind(service="snapshot")

    async def get_snapshot(self, session: AsyncSession, season_number: int) -> Optional[FinalizedSeason]:
        return await session.get(FinalizedSeason, season_number)

    async def get_finalized_leaderboard(self, session: AsyncSession, season_number: int) -> FinalizedSeason:
        snapshot = await self.get_snapshot(session, season_number)
        if snapshot is None:
            raise SnapshotNotFoundError(season_number)
        return snapshot

    async def write_snapshot(
        self,
        session: AsyncSession,
        info: SeasonInfo,
        entries: List[RankedEntry]
    ) -> FinalizedSeason:
        """
        Write the snapshot once. Re-writing identical data is a no-op;
        different data for an already finalized season is refused.
        """
        snapshot_hash = compute_snapshot_hash(entries)
        existing = await self.get_snapshot(session, info.season_number)

        if existing is not None:
            if existing.snapshot_hash != snapshot_hash:
                raise ReconciliationError(
                    f"Season {info.season_number} snapshot differs from the stored one",
                    {
                        "season_number": info.season_number,
                        "stored_hash": existing.snapshot_hash,
                        "computed_hash": snapshot_hash,
                    }
                )
            self.logger.info("Snapshot already written", season_number=info.season_number)
            return existing

        snapshot = FinalizedSeason(
            season_number=info.season_number,
            start_time=info.start_time,
            end_time=info.end_time,
            total_votes=info.total_votes,
            total_content=len(entries),
            snapshot_hash=snapshot_hash,
            finalized_at=datetime.now(timezone.utc),
            rewards_distributed=False,
            entries=[
                FinalizedLeaderboardEntry(
                    content_id=entry.content_id,
                    rank=entry.rank,
                    total_votes=entry.total_votes,
                    percentage_of_total=percentage_of_total(entry.total_votes, info.total_votes),
                    creator_address=entry.creator_address,
                    title=entry.title
                )
                for entry in entries
            ]
        )
        session.add(snapshot)
        await session.flush()

        self.logger.info(
            "Season snapshot written",
            season_number=info.season_number,
            entries=len(entries),
            snapshot_hash=snapshot_hash
        )
        return snapshot

    async def is_rewards_distributed(self, session: AsyncSession, season_number: int) -> bool:
        snapshot = await self.get_snapshot(session, season_number)
        return bool(snapshot and snapshot.rewards_distributed)

    async def mark_rewards_distributed(self, session: AsyncSession, season_number: int) -> None:
        snapshot = await self.get_finalized_leaderboard(session, season_number)
        snapshot.rewards_distributed = True
        snapshot.distribution_completed_at = datetime.now(timezone.utc)
        await session.flush()

    async def detect_new_finalizations(
        self,
        session: AsyncSession,
        chain: ChainReader,
        lookback: int = FINALIZATION_LOOKBACK
    ) -> List[int]:
        """Seasons finalized on-chain in the lookback window that have no snapshot yet."""
        current = await chain.get_current_season()
        candidates = list(range(max(1, current - lookback), current + 1))

        result = await session.execute(
            select(FinalizedSeason.season_number)
            .where(FinalizedSeason.season_number.in_(candidates))
        )
        already_finalized = set(result.scalars().all())

        detected = []
        for season_number in candidates:
            if season_number in already_finalized:
                continue
            try:
                info = await chain.get_season_info(season_number)
            except TransportError as e:
                self.logger.warning(
                    "Could not read season while detecting finalizations",
                    season_number=season_number,
                    error=e.message
                )
                continue
            if info.finalized:
                detected.append(season_number)

        self.logger.info(
            "Finalization detection complete",
            current_season=current,
            checked=len(candidates),
            detected=detected
        )
        return detected
