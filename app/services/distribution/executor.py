"""
Distribution Executor.

Runs a distribution plan in fixed-size batches. Batches run strictly in
order and each batch's results are committed before the next starts, so a
crash costs at most the in-flight batch. Per-recipient failures are
recorded and never abort the run.
"""

import asyncio
import math
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import structlog
from sqlalchemy import select

from app.core.config import settings
from app.core.database import get_async_session
from app.core.exceptions import ConflictError, NotFoundError, RecipientError, ValidationError
from app.models.distribution import ExecutionProgress, ExecutionStatus
from app.services.distribution.transport import PaymentResult, PaymentTransport
from app.services.rewards.types import DistributionPlan, RewardLineItem
from app.services.snapshot import SnapshotService


logger = structlog.get_logger(__name__)


def make_idempotency_key(distribution_id: str, batch_index: int, item: RewardLineItem) -> str:
    return f"{distribution_id}:{batch_index}:{item.recipient}:{item.category.value}:{item.content_id}"


def progress_to_dict(progress: ExecutionProgress) -> Dict[str, Any]:
    return {
        "distribution_id": progress.distribution_id,
        "season_number": progress.season_number,
        "status": progress.status.value,
        "total_recipients": progress.total_recipients,
        "processed": progress.processed,
        "successful": progress.successful,
        "failed": progress.failed,
        "progress_percent": progress.progress_percent,
        "total_amount": str(progress.total_amount),
        "distributed_amount": str(progress.distributed_amount),
        "batch_size": progress.batch_size,
        "completed_batches": progress.completed_batches,
        "total_batches": progress.total_batches,
        "transaction_records": progress.transaction_records,
        "error_details": progress.error_details,
        "started_at": progress.started_at.isoformat() if progress.started_at else None,
        "finished_at": progress.finished_at.isoformat() if progress.finished_at else None,
    }


class DistributionExecutor:
    """Pays a plan batch by batch through an idempotent transport."""

    def __init__(
        self,
        transport: PaymentTransport,
        session_factory: Callable = get_async_session,
        snapshot_service: Optional[SnapshotService] = None,
        payment_timeout: Optional[float] = None
    ):
        self.logger = logger.bind(service="distribution_executor")
        self.transport = transport
        self.session_factory = session_factory
        self.snapshots = snapshot_service or SnapshotService()
        self.payment_timeout = payment_timeout or settings.payment_timeout

    async def execute(
        self,
        season_number: int,
        plan: DistributionPlan,
        batch_size: Optional[int] = None,
        max_batches: Optional[int] = None
    ) -> ExecutionProgress:
        if batch_size is None:
            batch_size = settings.distribution_batch_size
        if batch_size < 1:
            raise ValidationError("Batch size must be positive", {"batch_size": batch_size})

        async with self.session_factory() as session:
            running = await self._get_in_progress(session, season_number)
            if running is not None:
                raise ConflictError(
                    f"Season {season_number} already has a distribution in progress",
                    {"distribution_id": running.distribution_id}
                )

            completed = await self._get_completed(session, season_number)
            if completed is not None or await self.snapshots.is_rewards_distributed(session, season_number):
                raise ConflictError(
                    f"Season {season_number} rewards were already distributed",
                    {
                        "season_number": season_number,
                        "distribution_id": completed.distribution_id if completed else None,
                    }
                )

            progress = ExecutionProgress(
                distribution_id=f"dist_{season_number}_{int(time.time() * 1000)}",
                season_number=season_number,
                status=ExecutionStatus.IN_PROGRESS,
                total_recipients=plan.recipient_count,
                processed=0,
                successful=0,
                failed=0,
                total_amount=plan.total_amount,
                distributed_amount=0,
                batch_size=batch_size,
                total_batches=math.ceil(plan.recipient_count / batch_size),
                completed_batches=0,
                transaction_records=[],
                error_details=[],
                started_at=datetime.now(timezone.utc)
            )
            session.add(progress)
            distribution_id = progress.distribution_id

        self.logger.info(
            "Distribution started",
            season_number=season_number,
            distribution_id=distribution_id,
            recipients=plan.recipient_count,
            total_amount=str(plan.total_amount),
            total_batches=progress.total_batches
        )

        return await self._run_batches(distribution_id, plan, max_batches)

    async def resume(
        self,
        season_number: int,
        plan: DistributionPlan,
        max_batches: Optional[int] = None
    ) -> ExecutionProgress:
        """
        Continue an in-progress distribution from its next unfinished batch.

        A run that already completed is returned as is, so a crash between
        the last batch and the caller recording completion pays no one twice.
        """
        async with self.session_factory() as session:
            progress = await self._get_in_progress(session, season_number)
            if progress is None:
                progress = await self._get_completed(session, season_number)
            if progress is None:
                raise NotFoundError(
                    f"Season {season_number} has no distribution in progress",
                    {"season_number": season_number}
                )
            if progress.total_recipients != plan.recipient_count:
                raise ConflictError(
                    "Plan does not match the distribution being resumed",
                    {
                        "distribution_id": progress.distribution_id,
                        "expected_recipients": progress.total_recipients,
                        "plan_recipients": plan.recipient_count,
                    }
                )
            distribution_id = progress.distribution_id

        if progress.status == ExecutionStatus.COMPLETED:
            self.logger.info(
                "Distribution already completed",
                season_number=season_number,
                distribution_id=distribution_id
            )
            return progress

        self.logger.info(
            "Resuming distribution",
            season_number=season_number,
            distribution_id=distribution_id,
            completed_batches=progress.completed_batches,
            total_batches=progress.total_batches
        )
        return await self._run_batches(distribution_id, plan, max_batches)

    async def _run_batches(
        self,
        distribution_id: str,
        plan: DistributionPlan,
        max_batches: Optional[int]
    ) -> ExecutionProgress:
        async with self.session_factory() as session:
            progress = await session.get(ExecutionProgress, distribution_id)
            batch_size = progress.batch_size
            start_batch = progress.completed_batches
            total_batches = progress.total_batches

        batches = plan.batches(batch_size)
        end_batch = total_batches if max_batches is None else min(total_batches, start_batch + max_batches)

        for batch_index in range(start_batch, end_batch):
            records, errors = await self._run_batch(distribution_id, batch_index, batches[batch_index])

            async with self.session_factory() as session:
                progress = await session.get(ExecutionProgress, distribution_id, with_for_update=True)
                successful = [record for record in records if record["status"] == "success"]

                progress.transaction_records = progress.transaction_records + records
                progress.error_details = progress.error_details + errors
                progress.processed += len(records)
                progress.successful += len(successful)
                progress.failed += len(errors)
                progress.distributed_amount += sum(int(record["amount"]) for record in successful)
                progress.completed_batches = batch_index + 1

            self.logger.info(
                "Batch completed",
                distribution_id=distribution_id,
                batch_index=batch_index,
                successful=len(records) - len(errors),
                failed=len(errors)
            )

        async with self.session_factory() as session:
            progress = await session.get(ExecutionProgress, distribution_id)

            if progress.completed_batches >= progress.total_batches:
                progress.status = ExecutionStatus.COMPLETED
                progress.finished_at = datetime.now(timezone.utc)

                if await self.snapshots.get_snapshot(session, progress.season_number) is not None:
                    await self.snapshots.mark_rewards_distributed(session, progress.season_number)

                self.logger.info(
                    "Distribution completed",
                    distribution_id=distribution_id,
                    season_number=progress.season_number,
                    successful=progress.successful,
                    failed=progress.failed,
                    distributed_amount=str(progress.distributed_amount)
                )

        return progress

    async def _run_batch(
        self,
        distribution_id: str,
        batch_index: int,
        items: List[RewardLineItem]
    ) -> tuple:
        records = []
        errors = []

        for item in items:
            key = make_idempotency_key(distribution_id, batch_index, item)
            record = {
                "recipient": item.recipient,
                "amount": str(item.amount),
                "category": item.category.value,
                "content_id": item.content_id,
                "batch_index": batch_index,
            }

            try:
                result: PaymentResult = await asyncio.wait_for(
                    self.transport.pay(item.recipient, item.amount, key),
                    timeout=self.payment_timeout
                )
                if not result.success:
                    raise RecipientError(item.recipient, result.error or "Payment failed")

                records.append({**record, "status": "success", "reference": result.reference})

            except Exception as e:
                if isinstance(e, RecipientError):
                    message = e.message
                elif isinstance(e, asyncio.TimeoutError):
                    message = f"Payment timed out after {self.payment_timeout}s"
                else:
                    message = str(e) or type(e).__name__

                self.logger.warning(
                    "Payment failed",
                    distribution_id=distribution_id,
                    batch_index=batch_index,
                    recipient=item.recipient,
                    amount=str(item.amount),
                    error=message
                )
                records.append({**record, "status": "failed", "reference": None})
                errors.append({
                    "recipient": item.recipient,
                    "amount": str(item.amount),
                    "error": message,
                    "batch_index": batch_index,
                })

        return records, errors

    async def get_progress(self, season_number: int) -> ExecutionProgress:
        """Most recent distribution for a season."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(ExecutionProgress)
                .where(ExecutionProgress.season_number == season_number)
                .order_by(ExecutionProgress.started_at.desc())
                .limit(1)
            )
            progress = result.scalar_one_or_none()

        if progress is None:
            raise NotFoundError(
                f"No distribution found for season {season_number}",
                {"season_number": season_number}
            )
        return progress

    def simulate(self, plan: DistributionPlan, batch_size: Optional[int] = None) -> Dict[str, Any]:
        """Describe how a plan would be executed without paying anyone."""
        if batch_size is None:
            batch_size = settings.distribution_batch_size
        if batch_size < 1:
            raise ValidationError("Batch size must be positive", {"batch_size": batch_size})

        batches = plan.batches(batch_size)
        return {
            "batch_size": batch_size,
            "batch_count": len(batches),
            "recipients": plan.recipient_count,
            "unique_recipients": plan.unique_recipients,
            "total_amount": str(plan.total_amount),
            "estimated_duration_seconds": len(batches) * settings.seconds_per_batch_estimate,
            "batches": [
                {
                    "index": index,
                    "size": len(batch),
                    "amount": str(sum(item.amount for item in batch)),
                }
                for index, batch in enumerate(batches)
            ],
        }

    async def _get_in_progress(self, session, season_number: int) -> Optional[ExecutionProgress]:
        result = await session.execute(
            select(ExecutionProgress)
            .where(
                ExecutionProgress.season_number == season_number,
                ExecutionProgress.status == ExecutionStatus.IN_PROGRESS
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _get_completed(self, session, season_number: int) -> Optional[ExecutionProgress]:
        result = await session.execute(
            select(ExecutionProgress)
            .where(
                ExecutionProgress.season_number == season_number,
                ExecutionProgress.status == ExecutionStatus.COMPLETED
            )
            .order_by(ExecutionProgress.started_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()
