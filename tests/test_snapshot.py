"""
Tests for leaderboard ranking, snapshot hashing and finalization detection.
"""

import pytest

from app.core.exceptions import ReconciliationError, SnapshotNotFoundError
from app.services.snapshot import (
    SnapshotService, compute_snapshot_hash, percentage_of_total, rank_leaderboard
)


def test_rank_orders_by_votes_then_content_id():
    ranked = rank_leaderboard([(9, 600), (5, 1000), (7, 800), (2, 800)])

    assert [(entry.content_id, entry.rank) for entry in ranked] == [(5, 1), (2, 2), (7, 3), (9, 4)]


def test_snapshot_hash_is_stable_and_order_independent():
    ranked = rank_leaderboard([(5, 1000), (2, 800), (9, 600)])
    expected = compute_snapshot_hash(ranked)

    assert compute_snapshot_hash(list(reversed(ranked))) == expected
    assert compute_snapshot_hash(rank_leaderboard([(9, 600), (2, 800), (5, 1000)])) == expected
    assert compute_snapshot_hash(rank_leaderboard([(5, 1000), (2, 800), (9, 601)])) != expected
    assert len(expected) == 64


def test_percentage_of_total():
    assert percentage_of_total(1000, 2400) == 41.67
    assert percentage_of_total(5, 0) == 0.0


async def test_write_snapshot_once(session_factory, chain):
    info = chain.add_season(1, [(5, 1000), (2, 800), (9, 600)])
    ranked = rank_leaderboard(chain.leaderboards[1])
    service = SnapshotService()

    async with session_factory() as session:
        written = await service.write_snapshot(session, info, ranked)
        snapshot_hash = written.snapshot_hash

    async with session_factory() as session:
        again = await service.write_snapshot(session, info, rank_leaderboard(chain.leaderboards[1]))
        assert again.snapshot_hash == snapshot_hash

        snapshot = await service.get_finalized_leaderboard(session, 1)
        assert [(entry.rank, entry.content_id, entry.total_votes) for entry in snapshot.entries] == [
            (1, 5, 1000), (2, 2, 800), (3, 9, 600)
        ]
        assert snapshot.total_content == 3
        assert not snapshot.rewards_distributed


async def test_rewriting_snapshot_with_different_data_is_refused(session_factory, chain):
    info = chain.add_season(1, [(5, 1000), (2, 800)])
    service = SnapshotService()

    async with session_factory() as session:
        await service.write_snapshot(session, info, rank_leaderboard(chain.leaderboards[1]))

    async with session_factory() as session:
        with pytest.raises(ReconciliationError):
            await service.write_snapshot(session, info, rank_leaderboard([(5, 1000), (2, 900)]))


async def test_missing_snapshot(session_factory):
    async with session_factory() as session:
        with pytest.raises(SnapshotNotFoundError):
            await SnapshotService().get_finalized_leaderboard(session, 4)
        assert not await SnapshotService().is_rewards_distributed(session, 4)


async def test_mark_rewards_distributed(session_factory, chain):
    info = chain.add_season(1, [(5, 1000)])
    service = SnapshotService()

    async with session_factory() as session:
        await service.write_snapshot(session, info, rank_leaderboard(chain.leaderboards[1]))
        await service.mark_rewards_distributed(session, 1)

    async with session_factory() as session:
        assert await service.is_rewards_distributed(session, 1)


async def test_detect_new_finalizations(session_factory, chain):
    for season_number in range(1, 5):
        chain.add_season(season_number, [(season_number, 100)])
    chain.add_season(5, [(5, 100)], ended=False)
    chain.unreadable_seasons.add(2)
    service = SnapshotService()

    async with session_factory() as session:
        await service.write_snapshot(session, chain.seasons[1], rank_leaderboard(chain.leaderboards[1]))

    async with session_factory() as session:
        detected = await service.detect_new_finalizations(session, chain, lookback=5)

    assert detected == [3, 4]


async def test_detect_respects_lookback_window(session_factory, chain):
    for season_number in range(1, 11):
        chain.add_season(season_number, [(season_number, 100)])

    async with session_factory() as session:
        detected = await SnapshotService().detect_new_finalizations(session, chain, lookback=2)

    assert detected == [8, 9, 10]
