"""
Reward calculation and distribution planning.
"""

from .types import (
    RewardCategory, SupporterVote, RankedEntry, RewardLineItem,
    RewardCalculation, DistributionPlan, RecipientValidationReport
)
from .calculator import RewardCalculator, compute_rewards
from .planner import DistributionPlanner

__all__ = [
    "RewardCategory",
    "SupporterVote",
    "RankedEntry",
    "RewardLineItem",
    "RewardCalculation",
    "DistributionPlan",
    "RecipientValidationReport",
    "RewardCalculator",
    "compute_rewards",
    "DistributionPlanner",
]
