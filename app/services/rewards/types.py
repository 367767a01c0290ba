"""
Types for reward calculation and distribution planning.

All amounts are integers in the smallest token unit and serialize as
decimal strings.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


# Share of the pool going to creators; supporters get the rest
CREATOR_SHARE_PERCENT = 60

# Per-rank split used for both the creator pool and the supporter pool
RANK_SHARE_PERCENT = {1: 50, 2: 30, 3: 20}

MAX_RANKED_ENTRIES = len(RANK_SHARE_PERCENT)


class RewardCategory(Enum):
    CREATOR_WINNER = "creator_winner"
    SUPPORTER = "supporter"


@dataclass(frozen=True)
class SupporterVote:
    voter_address: str
    votes: int


@dataclass
class RankedEntry:
    """A leaderboard entry with its rank and the voters who backed it."""
    content_id: int
    total_votes: int
    rank: int
    creator_address: Optional[str] = None
    title: Optional[str] = None
    supporters: List[SupporterVote] = field(default_factory=list)


@dataclass(frozen=True)
class RewardLineItem:
    recipient: str
    amount: int
    category: RewardCategory
    content_id: int
    rank: int

    @property
    def dedupe_key(self) -> tuple:
        return (self.recipient.lower(), self.category, self.content_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recipient": self.recipient,
            "amount": str(self.amount),
            "category": self.category.value,
            "content_id": self.content_id,
            "rank": self.rank,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RewardLineItem":
        return cls(
            recipient=data["recipient"],
            amount=int(data["amount"]),
            category=RewardCategory(data["category"]),
            content_id=int(data["content_id"]),
            rank=int(data["rank"])
        )


@dataclass
class RewardCalculation:
    """Output of the reward calculator for one season."""
    total_pool: int
    creator_pool: int
    supporter_pool: int
    creator_amounts: Dict[int, int] = field(default_factory=dict)
    supporter_sub_pools: Dict[int, int] = field(default_factory=dict)
    line_items: List[RewardLineItem] = field(default_factory=list)

    @property
    def total_distribution(self) -> int:
        return sum(item.amount for item in self.line_items)

    @property
    def remaining_pool(self) -> int:
        return self.total_pool - self.total_distribution

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_pool": str(self.total_pool),
            "creator_pool": str(self.creator_pool),
            "supporter_pool": str(self.supporter_pool),
            "creator_amounts": {str(rank): str(amount) for rank, amount in self.creator_amounts.items()},
            "supporter_sub_pools": {str(rank): str(amount) for rank, amount in self.supporter_sub_pools.items()},
            "total_distribution": str(self.total_distribution),
            "remaining_pool": str(self.remaining_pool),
            "line_item_count": len(self.line_items),
        }


@dataclass
class DistributionPlan:
    """Ordered, validated payments for a season. Immutable once approved."""
    items: List[RewardLineItem] = field(default_factory=list)
    excluded: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def total_amount(self) -> int:
        return sum(item.amount for item in self.items)

    @property
    def recipient_count(self) -> int:
        return len(self.items)

    @property
    def unique_recipients(self) -> int:
        return len({item.recipient.lower() for item in self.items})

    def batches(self, batch_size: int) -> List[List[RewardLineItem]]:
        return [self.items[i:i + batch_size] for i in range(0, len(self.items), batch_size)]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "items": [item.to_dict() for item in self.items],
            "excluded": self.excluded,
            "total_amount": str(self.total_amount),
            "recipient_count": self.recipient_count,
            "unique_recipients": self.unique_recipients,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DistributionPlan":
        return cls(
            items=[RewardLineItem.from_dict(item) for item in data.get("items", [])],
            excluded=list(data.get("excluded", []))
        )


@dataclass
class RecipientValidationReport:
    valid: int = 0
    invalid: int = 0
    duplicate_recipients: List[str] = field(default_factory=list)
    total_amount: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def all_valid(self) -> bool:
        return self.invalid == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "invalid": self.invalid,
            "all_valid": self.all_valid,
            "duplicate_recipients": self.duplicate_recipients,
            "total_amount": str(self.total_amount),
            "errors": self.errors,
        }
