"""
Reward Calculator.

Pure integer arithmetic over a ranked top-3 leaderboard. Every division
floors, and whatever flooring leaves behind is reported in remaining_pool
so that total_distribution + remaining_pool always equals the pool.
"""

from typing import List

import structlog

from app.core.exceptions import ComputationError
from .types import (
    CREATOR_SHARE_PERCENT, MAX_RANKED_ENTRIES, RANK_SHARE_PERCENT,
    RankedEntry, RewardCalculation, RewardCategory, RewardLineItem
)


logger = structlog.get_logger(__name__)


class RewardCalculator:
    """Maps ranked entries and a pool size to creator and supporter line items."""

    def __init__(self):
        self.logger = logger.bind(service="reward_calculator")

    def compute(self, entries: List[RankedEntry], total_pool: int) -> RewardCalculation:
        self._validate(entries, total_pool)

        creator_pool = total_pool * CREATOR_SHARE_PERCENT // 100
        supporter_pool = total_pool - creator_pool

        calculation = RewardCalculation(
            total_pool=total_pool,
            creator_pool=creator_pool,
            supporter_pool=supporter_pool
        )

        ordered = sorted(entries, key=lambda e: e.rank)
        creator_items = []
        supporter_items = []

        for entry in ordered:
            share = RANK_SHARE_PERCENT[entry.rank]

            creator_amount = creator_pool * share // 100
            calculation.creator_amounts[entry.rank] = creator_amount
            if creator_amount > 0:
                creator_items.append(RewardLineItem(
                    recipient=entry.creator_address or "",
                    amount=creator_amount,
                    category=RewardCategory.CREATOR_WINNER,
                    content_id=entry.content_id,
                    rank=entry.rank
                ))

            sub_pool = supporter_pool * share // 100
            calculation.supporter_sub_pools[entry.rank] = sub_pool

            for supporter in entry.supporters:
                reward = supporter.votes * sub_pool // entry.total_votes
                if reward > 0:
                    supporter_items.append(RewardLineItem(
                        recipient=supporter.voter_address,
                        amount=reward,
                        category=RewardCategory.SUPPORTER,
                        content_id=entry.content_id,
                        rank=entry.rank
                    ))

        calculation.line_items = creator_items + supporter_items

        if calculation.remaining_pool < 0:
            raise ComputationError(
                "Reward calculation over-distributes the pool",
                calculation.to_dict()
            )

        self.logger.info(
            "Rewards computed",
            total_pool=str(total_pool),
            ranked_entries=len(ordered),
            line_items=len(calculation.line_items),
            total_distribution=str(calculation.total_distribution),
            remaining_pool=str(calculation.remaining_pool)
        )
        return calculation

    def _validate(self, entries: List[RankedEntry], total_pool: int) -> None:
        if not isinstance(total_pool, int) or total_pool < 0:
            raise ComputationError("Reward pool must be a non-negative integer", {"total_pool": str(total_pool)})

        if len(entries) > MAX_RANKED_ENTRIES:
            raise ComputationError(
                f"At most {MAX_RANKED_ENTRIES} ranked entries can be rewarded",
                {"entries": len(entries)}
            )

        ranks = sorted(entry.rank for entry in entries)
        if ranks != list(range(1, len(entries) + 1)):
            raise ComputationError("Ranks must be exactly 1..n", {"ranks": ranks})

        content_ids = [entry.content_id for entry in entries]
        if len(set(content_ids)) != len(content_ids):
            raise ComputationError("Duplicate content ids in leaderboard", {"content_ids": content_ids})

        for entry in entries:
            details = {"content_id": entry.content_id, "rank": entry.rank}

            if entry.total_votes < 0:
                raise ComputationError("Negative vote total", details)
            if entry.total_votes == 0:
                raise ComputationError("Ranked entry has zero votes", details)

            supporter_votes = 0
            for supporter in entry.supporters:
                if supporter.votes < 0:
                    raise ComputationError(
                        "Negative supporter votes",
                        {**details, "voter": supporter.voter_address}
                    )
                supporter_votes += supporter.votes

            if supporter_votes > entry.total_votes:
                raise ComputationError(
                    "Supporter votes exceed the entry's vote total",
                    {**details, "supporter_votes": str(supporter_votes), "total_votes": str(entry.total_votes)}
                )


def compute_rewards(entries: List[RankedEntry], total_pool: int) -> RewardCalculation:
    """Convenience function for a one-off calculation."""
    return RewardCalculator().compute(entries, total_pool)
