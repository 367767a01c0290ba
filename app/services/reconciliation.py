"""
Reconciliation Checker.

Compares cached vote totals against the voting ledger. Only exact equality
counts as in sync; any drift means an on-chain vote event was missed and
must be repaired by an explicit re-sync.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import ReconciliationError, TransportError
from app.services.chain_reader import ChainReader
from app.services.season_cache import SeasonCacheStore


logger = structlog.get_logger(__name__)


@dataclass
class ReconciliationReport:
    season_number: int
    in_sync: bool
    chain_total: int
    cache_total: int
    details: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def difference(self) -> int:
        return self.chain_total - self.cache_total

    def to_dict(self) -> Dict[str, Any]:
        return {
            "season_number": self.season_number,
            "in_sync": self.in_sync,
            "chain_total": str(self.chain_total),
            "cache_total": str(self.cache_total),
            "difference": str(self.difference),
            "details": self.details,
        }


@dataclass
class ResyncReport:
    season_number: int
    content_count: int
    inserted: int
    updated: int
    voter_entries: int
    chain_total: int
    duration_ms: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "season_number": self.season_number,
            "content_count": self.content_count,
            "inserted": self.inserted,
            "updated": self.updated,
            "voter_entries": self.voter_entries,
            "chain_total": str(self.chain_total),
            "duration_ms": self.duration_ms,
        }


class ReconciliationChecker:
    """Detects and repairs drift between the season cache and the voting ledger."""

    def __init__(self, chain: ChainReader, store: Optional[SeasonCacheStore] = None):
        self.logger = logger.bind(service="reconciliation")
        self.chain = chain
        self.store = store or SeasonCacheStore()

    async def check_discrepancy(self, session: AsyncSession, season_number: int) -> ReconciliationReport:
        info = await self.chain.get_season_info(season_number)
        cached_totals = await self.store.get_content_totals(session, season_number)
        cache_total = sum(cached_totals.values())

        report = ReconciliationReport(
            season_number=season_number,
            in_sync=cache_total == info.total_votes,
            chain_total=info.total_votes,
            cache_total=cache_total
        )

        if report.in_sync:
            self.logger.info("Season cache in sync", season_number=season_number, total_votes=cache_total)
            return report

        report.details.append({
            "type": "aggregate",
            "chain_votes": str(info.total_votes),
            "cache_votes": str(cache_total),
            "difference": str(report.difference),
        })

        try:
            leaderboard = await self.chain.get_leaderboard(season_number)
        except TransportError as e:
            self.logger.warning(
                "Leaderboard unavailable, reporting aggregate mismatch only",
                season_number=season_number,
                error=e.message
            )
            leaderboard = None

        if leaderboard is not None:
            chain_totals = dict(leaderboard)
            for content_id in sorted(set(chain_totals) | set(cached_totals)):
                chain_votes = chain_totals.get(content_id, 0)
                cache_votes = cached_totals.get(content_id, 0)
                if chain_votes != cache_votes:
                    report.details.append({
                        "type": "content",
                        "content_id": content_id,
                        "chain_votes": str(chain_votes),
                        "cache_votes": str(cache_votes),
                        "difference": str(chain_votes - cache_votes),
                    })

        self.logger.warning(
            "Season cache out of sync",
            season_number=season_number,
            chain_total=info.total_votes,
            cache_total=cache_total,
            mismatched_items=len(report.details) - 1
        )
        return report

    async def require_in_sync(self, session: AsyncSession, season_number: int) -> ReconciliationReport:
        """Check and raise ReconciliationError unless the cache matches the ledger."""
        report = await self.check_discrepancy(session, season_number)
        if not report.in_sync:
            raise ReconciliationError(
                f"Season {season_number} cache is out of sync with the voting ledger",
                report.to_dict()
            )
        return report

    async def resync(self, session: AsyncSession, season_number: int) -> ResyncReport:
        """Refresh the season's cached totals and per-voter votes from the ledger."""
        start = time.time()

        info = await self.chain.get_season_info(season_number)
        leaderboard = await self.chain.get_leaderboard(season_number)

        totals = []
        for content_id, _ in leaderboard:
            votes = await self.chain.get_votes_for_content(season_number, content_id)
            totals.append((content_id, votes))

        voter_votes = await self.chain.get_voter_votes(season_number)
        for content_id, voter, votes in voter_votes:
            await self.store.upsert_voter_votes(session, season_number, content_id, voter, votes)

        voter_counts = await self.store.get_voter_counts(session, season_number)
        stats = await self.store.upsert_content_totals(session, season_number, totals, voter_counts)
        total_voters = await self.store.get_unique_voter_count(session, season_number)
        await self.store.upsert_season(session, info, total_voters=total_voters)

        report = ResyncReport(
            season_number=season_number,
            content_count=len(totals),
            inserted=stats.inserted,
            updated=stats.updated,
            voter_entries=len(voter_votes),
            chain_total=info.total_votes,
            duration_ms=int((time.time() - start) * 1000)
        )

        self.logger.info(
            "Season cache re-synced",
            season_number=season_number,
            content_count=report.content_count,
            inserted=report.inserted,
            updated=report.updated,
            voter_entries=report.voter_entries
        )
        return report
