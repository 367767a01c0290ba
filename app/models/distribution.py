"""
Distribution execution progress and the payment deduplication ledger.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import Enum as SQLEnum, Index, Integer, JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin, TokenAmount, utcnow


class ExecutionStatus(Enum):
    """Distribution run status. COMPLETED means every recipient was attempted."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class PaymentStatus(Enum):
    """Outcome of a single payment submission."""
    SUBMITTED = "submitted"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class ExecutionProgress(BaseModel, TimestampMixin):
    """One row per distribution attempt."""

    __tablename__ = "execution_progress"

    distribution_id: Mapped[str] = mapped_column(String(64), primary_key=True)

    season_number: Mapped[int] = mapped_column(Integer)

    status: Mapped[ExecutionStatus] = mapped_column(
        SQLEnum(ExecutionStatus),
        default=ExecutionStatus.PENDING
    )

    # Counters
    total_recipients: Mapped[int] = mapped_column(Integer, default=0)
    processed: Mapped[int] = mapped_column(Integer, default=0)
    successful: Mapped[int] = mapped_column(Integer, default=0)
    failed: Mapped[int] = mapped_column(Integer, default=0)

    total_amount: Mapped[int] = mapped_column(TokenAmount, default=0)
    distributed_amount: Mapped[int] = mapped_column(TokenAmount, default=0)

    # Batching
    batch_size: Mapped[int] = mapped_column(Integer)
    total_batches: Mapped[int] = mapped_column(Integer)
    completed_batches: Mapped[int] = mapped_column(
        Integer,
        default=0,
        comment="Index of the next batch to run"
    )

    # Audit trail, kept in plan order
    transaction_records: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, default=list)
    error_details: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, default=list)

    started_at: Mapped[datetime] = mapped_column(default=utcnow)
    finished_at: Mapped[Optional[datetime]] = mapped_column()

    __table_args__ = (
        Index("idx_execution_progress_season_status", "season_number", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<ExecutionProgress(id={self.distribution_id}, status={self.status.value}, "
            f"{self.processed}/{self.total_recipients})>"
        )

    @property
    def progress_percent(self) -> float:
        if not self.total_recipients:
            return 100.0
        return round(self.processed * 100 / self.total_recipients, 2)


class PaymentAttempt(BaseModel, TimestampMixin):
    """One row per idempotency key, written before the transport is called."""

    __tablename__ = "payment_attempts"

    idempotency_key: Mapped[str] = mapped_column(String(255), primary_key=True)

    distribution_id: Mapped[str] = mapped_column(String(64))
    batch_index: Mapped[int] = mapped_column(Integer)

    recipient: Mapped[str] = mapped_column(String(42))
    amount: Mapped[int] = mapped_column(TokenAmount)

    status: Mapped[PaymentStatus] = mapped_column(
        SQLEnum(PaymentStatus),
        default=PaymentStatus.SUBMITTED
    )

    reference: Mapped[Optional[str]] = mapped_column(
        String(100),
        comment="Transaction hash or transport reference"
    )

    error: Mapped[Optional[str]] = mapped_column(Text)

    __table_args__ = (
        Index("idx_payment_attempts_distribution", "distribution_id", "batch_index"),
    )

    def __repr__(self) -> str:
        return f"<PaymentAttempt(key={self.idempotency_key}, status={self.status.value})>"
