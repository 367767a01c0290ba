"""
Shared fixtures: a throwaway SQLite database and in-memory fakes for the
voting ledger, the content registry and the payment transport.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.core.exceptions import TransportError
from app.models import BaseModel
from app.services.chain_reader import SeasonInfo
from app.services.content_registry import ContentRecord
from app.services.distribution import (
    DeduplicatingTransport, DistributionExecutor, PaymentResult, PaymentTransport
)
from app.services.season_cache import SeasonCacheStore
from app.services.wizard import FinalizationWizard


def address(n: int) -> str:
    """Deterministic valid EVM address."""
    return "0x" + format(n, "040x")


class FakeChain:
    """In-memory voting ledger."""

    def __init__(self):
        self.seasons: Dict[int, SeasonInfo] = {}
        self.leaderboards: Dict[int, List[Tuple[int, int]]] = {}
        self.voter_votes: Dict[int, Dict[int, List[Tuple[str, int]]]] = {}
        self.current_season = 1
        self.fail_leaderboard = False
        self.unreadable_seasons = set()

    def add_season(
        self,
        season_number: int,
        leaderboard: List[Tuple[int, int]],
        ended: bool = True,
        total_votes: Optional[int] = None,
        votes: Optional[Dict[int, List[Tuple[str, int]]]] = None
    ) -> SeasonInfo:
        now = datetime.now(timezone.utc)
        end_time = now - timedelta(days=1) if ended else now + timedelta(days=1)
        info = SeasonInfo(
            season_number=season_number,
            start_time=end_time - timedelta(days=7),
            end_time=end_time,
            finalized=ended,
            total_votes=sum(v for _, v in leaderboard) if total_votes is None else total_votes
        )
        self.seasons[season_number] = info
        self.leaderboards[season_number] = list(leaderboard)
        if votes is not None:
            self.voter_votes[season_number] = votes
        self.current_season = max(self.current_season, season_number)
        return info

    async def get_current_season(self) -> int:
        return self.current_season

    async def get_season_info(self, season_number: int) -> SeasonInfo:
        if season_number in self.unreadable_seasons:
            raise TransportError("RPC unavailable", {"season_number": season_number})
        return self.seasons[season_number]

    async def get_leaderboard(self, season_number: int) -> List[Tuple[int, int]]:
        if self.fail_leaderboard:
            raise TransportError("RPC unavailable", {"season_number": season_number})
        return list(self.leaderboards.get(season_number, []))

    async def get_votes_for_content(self, season_number: int, content_id: int) -> int:
        return dict(self.leaderboards.get(season_number, [])).get(content_id, 0)

    async def get_voter_votes(self, season_number: int) -> List[Tuple[int, str, int]]:
        return sorted(
            (content_id, voter, amount)
            for content_id, voters in self.voter_votes.get(season_number, {}).items()
            for voter, amount in voters
        )


class FakeRegistry:
    """Content registry resolving every id to a creator address."""

    def __init__(self, creators: Optional[Dict[int, Optional[str]]] = None):
        self.creators = creators or {}
        self.failing = set()

    async def get_record(self, content_id: int) -> ContentRecord:
        if content_id in self.failing:
            raise TransportError("Content registry timeout", {"content_id": content_id})
        creator = self.creators.get(content_id, address(10_000 + content_id))
        return ContentRecord(content_id=content_id, creator_address=creator, title=f"Evermark {content_id}")


class RecordingTransport(PaymentTransport):
    """Records every payment; fails recipients listed in fail_for."""

    def __init__(self, fail_for=None, raise_for=None):
        self.calls: List[Tuple[str, int, str]] = []
        self.fail_for = set(fail_for or [])
        self.raise_for = set(raise_for or [])

    async def pay(self, recipient: str, amount: int, idempotency_key: str) -> PaymentResult:
        self.calls.append((recipient, amount, idempotency_key))
        if recipient in self.raise_for:
            raise RuntimeError("connection reset")
        if recipient in self.fail_for:
            return PaymentResult(success=False, error="insufficient funds")
        return PaymentResult(success=True, reference=f"0xref{len(self.calls)}")


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'season_rewards.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(BaseModel.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    @asynccontextmanager
    async def factory():
        async with maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    return factory


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def registry():
    return FakeRegistry()


@pytest.fixture
def store():
    return SeasonCacheStore()


async def seed_votes(session_factory, store, season_number, votes_by_content):
    """Cache per-voter votes and content totals: {content_id: [(voter, votes), ...]}."""
    async with session_factory() as session:
        for content_id, voters in votes_by_content.items():
            for voter, votes in voters:
                await store.upsert_voter_votes(session, season_number, content_id, voter, votes)
        await store.upsert_content_totals(
            session,
            season_number,
            [(content_id, sum(v for _, v in voters)) for content_id, voters in votes_by_content.items()]
        )


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def executor(session_factory, transport):
    return DistributionExecutor(
        DeduplicatingTransport(transport, session_factory),
        session_factory=session_factory,
        payment_timeout=5
    )


@pytest.fixture
def wizard(session_factory, chain, registry, executor, store):
    return FinalizationWizard(chain, registry, executor, session_factory=session_factory, store=store)


SEASON_VOTES = {
    5: [(address(1), 600), (address(2), 400)],
    2: [(address(3), 800)],
    9: [(address(1), 300), (address(4), 300)],
    11: [(address(5), 100)],
}


@pytest_asyncio.fixture
async def ended_season(session_factory, chain, store):
    """Season 1: ended, cached and in sync with the ledger."""
    chain.add_season(
        1,
        [(cid, sum(v for _, v in voters)) for cid, voters in SEASON_VOTES.items()],
        votes=SEASON_VOTES
    )
    await seed_votes(session_factory, store, 1, SEASON_VOTES)
    return 1
