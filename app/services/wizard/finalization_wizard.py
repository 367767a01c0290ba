"""
Season Finalization Wizard.

A five step state machine (validate, sync, compute, review, execute) whose
progress is one persisted record per season. Every status change is
committed before the step's work starts and again when it finishes, so a
crashed handler resumes at the last completed step.
"""

from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from app.core.config import settings
from app.core.database import dialect_insert, get_async_session
from app.core.exceptions import (
    ConflictError, SeasonRewardsException, TransportError, ValidationError,
    WizardNotFoundError
)
from app.models.distribution import ExecutionProgress
from app.models.wizard import WizardProgress
from app.services.chain_reader import ChainReader
from app.services.content_registry import ContentRegistryClient
from app.services.distribution.executor import DistributionExecutor, progress_to_dict
from app.services.reconciliation import ReconciliationChecker
from app.services.rewards.calculator import RewardCalculator
from app.services.rewards.planner import DistributionPlanner
from app.services.rewards.types import (
    MAX_RANKED_ENTRIES, DistributionPlan, RankedEntry, RecipientValidationReport, SupporterVote
)
from app.services.season_cache import SeasonCacheStore
from app.services.snapshot import SnapshotService, rank_leaderboard
from .steps import StepStatus, WizardStep, initial_steps, steps_from_json, steps_to_json


logger = structlog.get_logger(__name__)

StepWork = Callable[[AsyncSession, WizardProgress], Awaitable[Dict[str, Any]]]


class FinalizationWizard:
    """Drives a season from close to paid out."""

    BEGIN_STEP_ATTEMPTS = 3

    def __init__(
        self,
        chain: ChainReader,
        registry: ContentRegistryClient,
        executor: DistributionExecutor,
        session_factory: Callable = get_async_session,
        store: Optional[SeasonCacheStore] = None,
        snapshots: Optional[SnapshotService] = None
    ):
        self.logger = logger.bind(service="finalization_wizard")
        self.chain = chain
        self.registry = registry
        self.executor = executor
        self.session_factory = session_factory
        self.store = store or SeasonCacheStore()
        self.snapshots = snapshots or SnapshotService()
        self.reconciliation = ReconciliationChecker(chain, self.store)
        self.calculator = RewardCalculator()
        self.planner = DistributionPlanner()

    # ------------------------------------------------------------------
    # Progress record
    # ------------------------------------------------------------------

    async def _load(self, session: AsyncSession, season_number: int, for_update: bool = False) -> WizardProgress:
        stmt = select(WizardProgress).where(WizardProgress.season_number == season_number)
        if for_update:
            stmt = stmt.with_for_update()
        progress = (await session.execute(stmt)).scalar_one_or_none()
        if progress is None:
            raise WizardNotFoundError(season_number)
        return progress

    @staticmethod
    def _to_status(progress: WizardProgress) -> Dict[str, Any]:
        steps = steps_from_json(progress.steps)
        current = steps[progress.current_step - 1]
        previous_completed = (
            progress.current_step == 1
            or steps[progress.current_step - 2].status == StepStatus.COMPLETED
        )
        return {
            "season_number": progress.season_number,
            "current_step": progress.current_step,
            "steps": steps_to_json(steps),
            "step_data": progress.step_data or {},
            "approved_by": progress.approved_by,
            "approved_at": progress.approved_at.isoformat() if progress.approved_at else None,
            "can_proceed": previous_completed and current.status in (StepStatus.PENDING, StepStatus.ERROR),
        }

    async def get_status(self, season_number: int) -> Dict[str, Any]:
        async with self.session_factory() as session:
            return self._to_status(await self._load(session, season_number))

    async def _begin_step(self, season_number: int, step: WizardStep) -> None:
        """
        Commit a step's move to in_progress before its work starts.

        The update is guarded by the record's version column. A writer that
        loses a race re-reads the record, so two concurrent callers of the
        same step cannot both move it to in_progress.
        """
        for attempt in range(self.BEGIN_STEP_ATTEMPTS):
            try:
                await self._transition_to_in_progress(season_number, step)
                return
            except StaleDataError:
                self.logger.warning(
                    "Wizard record changed concurrently, re-reading",
                    season_number=season_number,
                    step=int(step),
                    attempt=attempt + 1
                )

        raise ConflictError(
            f"Season {season_number} wizard is being modified concurrently",
            {"season_number": season_number, "step": int(step)}
        )

    async def _transition_to_in_progress(self, season_number: int, step: WizardStep) -> None:
        async with self.session_factory() as session:
            progress = await self._load(session, season_number, for_update=True)
            steps = steps_from_json(progress.steps)

            if step > WizardStep.VALIDATE and steps[step - 2].status != StepStatus.COMPLETED:
                raise ValidationError(
                    f"Step {int(step)} requires step {int(step) - 1} to be completed",
                    {"season_number": season_number, "step": int(step)},
                    code="STEP_ORDER_VIOLATION"
                )

            steps[step - 1] = steps[step - 1].transition(StepStatus.IN_PROGRESS)
            progress.steps = steps_to_json(steps)
            progress.current_step = int(step)

    async def _complete_step(
        self,
        session: AsyncSession,
        progress: WizardProgress,
        step: WizardStep,
        data: Dict[str, Any]
    ) -> None:
        steps = steps_from_json(progress.steps)
        steps[step - 1] = steps[step - 1].transition(StepStatus.COMPLETED)
        progress.steps = steps_to_json(steps)
        progress.step_data = {**(progress.step_data or {}), step.key: data}
        if step < WizardStep.EXECUTE:
            progress.current_step = int(step) + 1

    async def _fail_step(self, season_number: int, step: WizardStep, message: str) -> None:
        async with self.session_factory() as session:
            progress = await self._load(session, season_number)
            steps = steps_from_json(progress.steps)
            if steps[step - 1].status == StepStatus.IN_PROGRESS:
                steps[step - 1] = steps[step - 1].transition(StepStatus.ERROR, error=message)
                progress.steps = steps_to_json(steps)

    async def _run_step(self, season_number: int, step: WizardStep, work: StepWork) -> Dict[str, Any]:
        await self._begin_step(season_number, step)
        log = self.logger.bind(season_number=season_number, step=int(step), step_name=step.title)
        log.info("Wizard step started")

        try:
            async with self.session_factory() as session:
                progress = await self._load(session, season_number)
                data = await work(session, progress)
                await self._complete_step(session, progress, step, data)
                status = self._to_status(progress)

        except Exception as e:
            message = e.message if isinstance(e, SeasonRewardsException) else (str(e) or type(e).__name__)
            log.error("Wizard step failed", error=message)
            await self._fail_step(season_number, step, message)
            raise

        log.info("Wizard step completed")
        return status

    # ------------------------------------------------------------------
    # Operator operations
    # ------------------------------------------------------------------

    async def start(self, season_number: int) -> Dict[str, Any]:
        """Start a wizard, or return the existing one untouched."""
        now = datetime.now(timezone.utc)
        async with self.session_factory() as session:
            stmt = dialect_insert(session, WizardProgress).values(
                season_number=season_number,
                current_step=int(WizardStep.VALIDATE),
                steps=steps_to_json(initial_steps()),
                step_data={},
                created_at=now,
                updated_at=now
            ).on_conflict_do_nothing(index_elements=["season_number"])
            created = (await session.execute(stmt)).rowcount == 1

        if not created:
            self.logger.info("Resuming existing wizard", season_number=season_number)
            return await self.get_status(season_number)

        self.logger.info("Wizard created", season_number=season_number)
        return await self._run_step(season_number, WizardStep.VALIDATE, self._validate)

    async def check_season(self, session: AsyncSession, season_number: int) -> Dict[str, Any]:
        """Side-effect free validation of a season's readiness for finalization."""
        info = await self.chain.get_season_info(season_number)
        now = datetime.now(timezone.utc)
        distributed = await self.snapshots.is_rewards_distributed(session, season_number)
        reconciliation = await self.reconciliation.check_discrepancy(session, season_number)

        issues = []
        if not info.has_ended(now):
            issues.append(f"Season {season_number} has not ended (ends {info.end_time.isoformat()})")
        if distributed:
            issues.append(f"Season {season_number} rewards were already distributed")
        if not reconciliation.in_sync:
            issues.append(
                f"Cache total {reconciliation.cache_total} does not match chain total {reconciliation.chain_total}"
            )

        return {
            "season_number": season_number,
            "season_ended": info.has_ended(now),
            "finalized_on_chain": info.finalized,
            "start_time": info.start_time.isoformat(),
            "end_time": info.end_time.isoformat(),
            "total_votes": str(info.total_votes),
            "rewards_distributed": distributed,
            "reconciliation": reconciliation.to_dict(),
            "can_finalize": not issues,
            "issues": issues,
        }

    async def _validate(self, session: AsyncSession, progress: WizardProgress) -> Dict[str, Any]:
        season_number = progress.season_number
        info = await self.chain.get_season_info(season_number)

        if not info.has_ended():
            raise ValidationError(
                f"Season {season_number} has not ended",
                {"season_number": season_number, "end_time": info.end_time.isoformat()},
                code="SEASON_NOT_ENDED"
            )

        # "Finalized" means paid out; a wizard reset after Sync wrote the snapshot must pass again
        if await self.snapshots.is_rewards_distributed(session, season_number):
            raise ValidationError(
                f"Season {season_number} rewards were already distributed",
                {"season_number": season_number},
                code="ALREADY_DISTRIBUTED"
            )

        report = await self.reconciliation.require_in_sync(session, season_number)
        await self.store.upsert_season(session, info)

        return {
            "start_time": info.start_time.isoformat(),
            "end_time": info.end_time.isoformat(),
            "finalized_on_chain": info.finalized,
            "total_votes": str(info.total_votes),
            "reconciliation": report.to_dict(),
        }

    async def force_validate(self, season_number: int) -> Dict[str, Any]:
        async with self.session_factory() as session:
            result = await self.check_season(session, season_number)
            existing = await session.get(WizardProgress, season_number)
            step_one = steps_from_json(existing.steps)[0] if existing else None

        result["wizard"] = None
        if step_one is not None and step_one.status != StepStatus.COMPLETED:
            try:
                result["wizard"] = await self._run_step(season_number, WizardStep.VALIDATE, self._validate)
            except SeasonRewardsException as e:
                result["wizard"] = await self.get_status(season_number)
                result["wizard_error"] = e.to_dict()
        elif existing is not None:
            result["wizard"] = await self.get_status(season_number)

        return result

    async def sync(self, season_number: int) -> Dict[str, Any]:
        return await self._run_step(season_number, WizardStep.SYNC, self._sync)

    async def _sync(self, session: AsyncSession, progress: WizardProgress) -> Dict[str, Any]:
        season_number = progress.season_number

        resync = await self.reconciliation.resync(session, season_number)
        await self.reconciliation.require_in_sync(session, season_number)

        info = await self.chain.get_season_info(season_number)
        totals = await self.store.get_content_totals(session, season_number)
        ranked = rank_leaderboard((cid, votes) for cid, votes in totals.items() if votes > 0)

        for entry in ranked:
            try:
                record = await self.registry.get_record(entry.content_id)
                entry.creator_address = record.creator_address
                entry.title = record.title
            except TransportError as e:
                self.logger.warning(
                    "Could not resolve content creator",
                    season_number=season_number,
                    content_id=entry.content_id,
                    error=e.message
                )

        snapshot = await self.snapshots.write_snapshot(session, info, ranked)

        return {
            "resync": resync.to_dict(),
            "ranked_entries": len(ranked),
            "snapshot_hash": snapshot.snapshot_hash,
            "top_entries": [
                {
                    "rank": entry.rank,
                    "content_id": entry.content_id,
                    "total_votes": str(entry.total_votes),
                    "creator_address": entry.creator_address,
                    "title": entry.title,
                }
                for entry in ranked[:MAX_RANKED_ENTRIES]
            ],
        }

    async def compute(self, season_number: int, total_pool: Optional[int] = None) -> Dict[str, Any]:
        pool = settings.default_reward_pool if total_pool is None else total_pool

        async def work(session: AsyncSession, progress: WizardProgress) -> Dict[str, Any]:
            return await self._compute(session, progress, pool)

        return await self._run_step(season_number, WizardStep.COMPUTE, work)

    async def _compute(self, session: AsyncSession, progress: WizardProgress, total_pool: int) -> Dict[str, Any]:
        season_number = progress.season_number
        await self.reconciliation.require_in_sync(session, season_number)

        snapshot = await self.snapshots.get_finalized_leaderboard(session, season_number)

        entries = []
        for row in snapshot.entries[:MAX_RANKED_ENTRIES]:
            supporters = await self.store.get_supporters(session, season_number, row.content_id)
            entries.append(RankedEntry(
                content_id=row.content_id,
                total_votes=row.total_votes,
                rank=row.rank,
                creator_address=row.creator_address,
                title=row.title,
                supporters=[SupporterVote(voter_address=voter, votes=votes) for voter, votes in supporters]
            ))

        calculation = self.calculator.compute(entries, total_pool)
        plan = self.planner.plan(calculation)

        return {
            "calculation": calculation.to_dict(),
            "plan": plan.to_dict(),
            "snapshot_hash": snapshot.snapshot_hash,
        }

    async def approve(self, season_number: int, approved_by: str) -> Dict[str, Any]:
        async def work(session: AsyncSession, progress: WizardProgress) -> Dict[str, Any]:
            progress.approved_by = approved_by
            progress.approved_at = datetime.now(timezone.utc)
            return {"approved_by": approved_by, "approved_at": progress.approved_at.isoformat()}

        return await self._run_step(season_number, WizardStep.REVIEW, work)

    async def get_plan(self, season_number: int) -> DistributionPlan:
        async with self.session_factory() as session:
            progress = await self._load(session, season_number)

        computed = (progress.step_data or {}).get(WizardStep.COMPUTE.key)
        if not computed:
            raise ValidationError(
                f"Season {season_number} has no computed distribution plan",
                {"season_number": season_number},
                code="PLAN_NOT_COMPUTED"
            )
        return DistributionPlan.from_dict(computed["plan"])

    async def validate_plan_recipients(self, season_number: int) -> RecipientValidationReport:
        plan = await self.get_plan(season_number)
        return self.planner.validate_recipients(plan.items)

    async def simulate_distribution(self, season_number: int, batch_size: Optional[int] = None) -> Dict[str, Any]:
        plan = await self.get_plan(season_number)
        return self.executor.simulate(plan, batch_size)

    async def execute(self, season_number: int, batch_size: Optional[int] = None) -> Dict[str, Any]:
        plan = await self.get_plan(season_number)
        await self._begin_step(season_number, WizardStep.EXECUTE)

        try:
            execution = await self.executor.execute(season_number, plan, batch_size)
        except Exception as e:
            message = e.message if isinstance(e, SeasonRewardsException) else (str(e) or type(e).__name__)
            self.logger.error("Distribution failed to run", season_number=season_number, error=message)
            await self._fail_step(season_number, WizardStep.EXECUTE, message)
            raise

        return await self._finish_execution(season_number, execution)

    async def resume_execution(self, season_number: int, max_batches: Optional[int] = None) -> Dict[str, Any]:
        plan = await self.get_plan(season_number)

        async with self.session_factory() as session:
            progress = await self._load(session, season_number, for_update=True)
            steps = steps_from_json(progress.steps)
            execute_step = steps[WizardStep.EXECUTE - 1]

            if execute_step.status == StepStatus.ERROR:
                steps[WizardStep.EXECUTE - 1] = execute_step.transition(StepStatus.IN_PROGRESS)
                progress.steps = steps_to_json(steps)
            elif execute_step.status != StepStatus.IN_PROGRESS:
                raise ValidationError(
                    f"Season {season_number} has no execution to resume",
                    {"season_number": season_number, "status": execute_step.status.value},
                    code="NOTHING_TO_RESUME"
                )

        try:
            execution = await self.executor.resume(season_number, plan, max_batches)
        except Exception as e:
            message = e.message if isinstance(e, SeasonRewardsException) else (str(e) or type(e).__name__)
            await self._fail_step(season_number, WizardStep.EXECUTE, message)
            raise

        return await self._finish_execution(season_number, execution)

    async def _finish_execution(self, season_number: int, execution) -> Dict[str, Any]:
        summary = progress_to_dict(execution)

        async with self.session_factory() as session:
            progress = await self._load(session, season_number)
            if summary["status"] == "completed":
                await self._complete_step(session, progress, WizardStep.EXECUTE, {
                    "distribution_id": summary["distribution_id"],
                    "successful": summary["successful"],
                    "failed": summary["failed"],
                    "distributed_amount": summary["distributed_amount"],
                })
            status = self._to_status(progress)

        status["execution"] = summary
        return status

    async def reset(self, season_number: int) -> None:
        async with self.session_factory() as session:
            progress = await self._load(session, season_number, for_update=True)
            execute_step = steps_from_json(progress.steps)[WizardStep.EXECUTE - 1]

            if execute_step.status != StepStatus.PENDING:
                raise ConflictError(
                    f"Season {season_number} wizard cannot be reset after execution started",
                    {"season_number": season_number, "execute_status": execute_step.status.value}
                )
            distribution = await session.execute(
                select(ExecutionProgress.distribution_id)
                .where(ExecutionProgress.season_number == season_number)
                .limit(1)
            )
            if distribution.scalar_one_or_none() is not None:
                raise ConflictError(
                    f"Season {season_number} already has a distribution record",
                    {"season_number": season_number}
                )

            await session.execute(delete(WizardProgress).where(WizardProgress.season_number == season_number))

        self.logger.warning("Wizard reset", season_number=season_number)


# Global instance
_finalization_wizard: Optional[FinalizationWizard] = None


async def get_finalization_wizard() -> FinalizationWizard:
    """Get or create global FinalizationWizard wired to the configured collaborators."""
    global _finalization_wizard
    if _finalization_wizard is None:
        from app.services.chain_reader import get_chain_reader
        from app.services.content_registry import get_content_registry
        from app.services.distribution.transport import create_payment_transport

        _finalization_wizard = FinalizationWizard(
            chain=await get_chain_reader(),
            registry=await get_content_registry(),
            executor=DistributionExecutor(create_payment_transport())
        )
    return _finalization_wizard
