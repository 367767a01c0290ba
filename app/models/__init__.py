"""
Database models for the season rewards backend.

Contains SQLAlchemy models that mirror voting ledger state and hold the
durable progress of season finalization and reward distribution.
"""

from .base import BaseModel, TimestampMixin, TokenAmount
from .season import SeasonCache, ContentVoteCache, VoterVoteCache
from .wizard import WizardProgress
from .distribution import ExecutionProgress, ExecutionStatus, PaymentAttempt, PaymentStatus
from .finalized import FinalizedSeason, FinalizedLeaderboardEntry

__all__ = [
    "BaseModel",
    "TimestampMixin",
    "TokenAmount",
    "SeasonCache",
    "ContentVoteCache",
    "VoterVoteCache",
    "WizardProgress",
    "ExecutionProgress",
    "ExecutionStatus",
    "PaymentAttempt",
    "PaymentStatus",
    "FinalizedSeason",
    "FinalizedLeaderboardEntry",
]
