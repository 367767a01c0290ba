"""
Tests for the season finalization wizard.
"""

import asyncio

import pytest
from sqlalchemy import func, select

from app.core.exceptions import (
    ConflictError, InvalidTransitionError, ReconciliationError, ValidationError,
    WizardNotFoundError
)
from app.models.wizard import WizardProgress
from app.services.wizard import ALLOWED_TRANSITIONS, StepState, StepStatus, WizardStep
from tests.conftest import address


def statuses(wizard_status):
    return [step["status"] for step in wizard_status["steps"]]


async def run_through_approval(wizard, season_number=1, pool=2100):
    await wizard.start(season_number)
    await wizard.sync(season_number)
    await wizard.compute(season_number, pool)
    return await wizard.approve(season_number, "ops@example")


def test_transition_table():
    assert ALLOWED_TRANSITIONS[StepStatus.COMPLETED] == set()

    state = StepState(step=WizardStep.SYNC)
    running = state.transition(StepStatus.IN_PROGRESS)
    failed = running.transition(StepStatus.ERROR, error="boom")
    retried = failed.transition(StepStatus.IN_PROGRESS)

    assert failed.error == "boom"
    assert retried.error is None
    assert retried.transition(StepStatus.COMPLETED).status == StepStatus.COMPLETED

    with pytest.raises(InvalidTransitionError):
        state.transition(StepStatus.COMPLETED)
    with pytest.raises(InvalidTransitionError):
        retried.transition(StepStatus.COMPLETED).transition(StepStatus.IN_PROGRESS)


def test_step_titles():
    assert WizardStep.VALIDATE.title == "Season Status & Validation"
    assert WizardStep.EXECUTE.key == "execute"


async def test_start_validates_and_moves_to_sync(wizard, ended_season):
    status = await wizard.start(ended_season)

    assert status["current_step"] == 2
    assert statuses(status) == ["completed", "pending", "pending", "pending", "pending"]
    assert status["can_proceed"]
    assert status["step_data"]["validate"]["reconciliation"]["in_sync"]


async def test_start_resumes_existing_wizard(wizard, ended_season):
    await wizard.start(ended_season)
    await wizard.sync(ended_season)

    status = await wizard.start(ended_season)

    assert status["current_step"] == 3
    assert statuses(status)[:3] == ["completed", "completed", "pending"]


async def test_unended_season_fails_validation(wizard, chain, ended_season):
    chain.add_season(ended_season, chain.leaderboards[ended_season], ended=False)

    with pytest.raises(ValidationError) as exc_info:
        await wizard.start(ended_season)
    assert exc_info.value.code == "SEASON_NOT_ENDED"

    status = await wizard.get_status(ended_season)
    assert status["steps"][0]["status"] == "error"
    assert status["can_proceed"]


async def test_force_validate_reruns_failed_step(wizard, chain, ended_season):
    leaderboard = chain.leaderboards[ended_season]
    chain.add_season(ended_season, leaderboard, ended=False)
    with pytest.raises(ValidationError):
        await wizard.start(ended_season)

    chain.add_season(ended_season, leaderboard, ended=True)
    result = await wizard.force_validate(ended_season)

    assert result["can_finalize"]
    assert result["wizard"]["steps"][0]["status"] == "completed"
    assert result["wizard"]["current_step"] == 2


async def test_force_validate_without_wizard_only_reports(wizard, chain, ended_season):
    chain.add_season(ended_season, chain.leaderboards[ended_season], total_votes=99)

    result = await wizard.force_validate(ended_season)

    assert not result["can_finalize"]
    assert result["wizard"] is None
    assert len(result["issues"]) == 1
    with pytest.raises(WizardNotFoundError):
        await wizard.get_status(ended_season)


async def test_steps_must_run_in_order(wizard, ended_season):
    await wizard.start(ended_season)

    with pytest.raises(ValidationError) as exc_info:
        await wizard.compute(ended_season, 2100)
    assert exc_info.value.code == "STEP_ORDER_VIOLATION"

    status = await wizard.get_status(ended_season)
    assert statuses(status)[2] == "pending"


async def test_completed_step_cannot_rerun(wizard, ended_season):
    await wizard.start(ended_season)
    await wizard.sync(ended_season)

    with pytest.raises(InvalidTransitionError):
        await wizard.sync(ended_season)


async def test_sync_writes_snapshot_with_creators(wizard, ended_season):
    await wizard.start(ended_season)
    status = await wizard.sync(ended_season)

    sync_data = status["step_data"]["sync"]
    assert sync_data["ranked_entries"] == 4
    assert [entry["content_id"] for entry in sync_data["top_entries"]] == [5, 2, 9]
    assert sync_data["top_entries"][0]["creator_address"] == address(10_005)
    assert len(sync_data["snapshot_hash"]) == 64


async def test_compute_builds_plan(wizard, ended_season):
    await wizard.start(ended_season)
    await wizard.sync(ended_season)
    status = await wizard.compute(ended_season, 2100)

    computed = status["step_data"]["compute"]
    assert computed["calculation"]["creator_amounts"] == {"1": "630", "2": "378", "3": "252"}
    assert computed["calculation"]["remaining_pool"] == "0"
    assert computed["plan"]["recipient_count"] == 8
    assert computed["plan"]["total_amount"] == "2100"
    assert [item["recipient"] for item in computed["plan"]["items"][:3]] == [
        address(10_005), address(10_002), address(10_009)
    ]


async def test_compute_refused_when_cache_drifts(wizard, chain, ended_season):
    await wizard.start(ended_season)
    await wizard.sync(ended_season)

    # a vote lands on chain after the sync
    leaderboard = [(5, 1100), (2, 800), (9, 600), (11, 100)]
    chain.add_season(ended_season, leaderboard)

    with pytest.raises(ReconciliationError):
        await wizard.compute(ended_season, 2100)

    status = await wizard.get_status(ended_season)
    assert status["steps"][2]["status"] == "error"
    assert "out of sync" in status["steps"][2]["error"]
    assert "compute" not in status["step_data"]


async def test_unresolved_creator_is_excluded_from_plan(wizard, registry, ended_season):
    registry.failing.add(5)
    await wizard.start(ended_season)
    await wizard.sync(ended_season)
    status = await wizard.compute(ended_season, 2100)

    plan = status["step_data"]["compute"]["plan"]
    assert plan["recipient_count"] == 7
    assert plan["excluded"][0]["content_id"] == 5
    assert plan["excluded"][0]["reason"] == "invalid_address"


async def test_plan_unavailable_before_compute(wizard, ended_season):
    await wizard.start(ended_season)

    with pytest.raises(ValidationError) as exc_info:
        await wizard.get_plan(ended_season)
    assert exc_info.value.code == "PLAN_NOT_COMPUTED"


async def test_approve_records_operator(wizard, ended_season):
    status = await run_through_approval(wizard, ended_season)

    assert status["approved_by"] == "ops@example"
    assert status["current_step"] == 5
    assert status["step_data"]["review"]["approved_by"] == "ops@example"


async def test_recipient_validation_and_simulation(wizard, ended_season):
    await run_through_approval(wizard, ended_season)

    report = await wizard.validate_plan_recipients(ended_season)
    simulation = await wizard.simulate_distribution(ended_season, 3)

    assert report.all_valid
    assert report.duplicate_recipients == [address(1)]
    assert simulation["batch_count"] == 3
    assert simulation["unique_recipients"] == 7
    assert [batch["size"] for batch in simulation["batches"]] == [3, 3, 2]


async def test_execute_completes_wizard(wizard, transport, session_factory, ended_season):
    await run_through_approval(wizard, ended_season)

    status = await wizard.execute(ended_season, batch_size=3)

    assert statuses(status) == ["completed"] * 5
    assert status["execution"]["status"] == "completed"
    assert status["execution"]["successful"] == 8
    assert status["execution"]["distributed_amount"] == "2100"
    assert len(transport.calls) == 8

    async with session_factory() as session:
        assert await wizard.snapshots.is_rewards_distributed(session, ended_season)
        check = await wizard.check_season(session, ended_season)
    assert not check["can_finalize"]


async def test_execute_requires_approval(wizard, ended_season):
    await wizard.start(ended_season)
    await wizard.sync(ended_season)
    await wizard.compute(ended_season, 2100)

    with pytest.raises(ValidationError) as exc_info:
        await wizard.execute(ended_season, batch_size=3)
    assert exc_info.value.code == "STEP_ORDER_VIOLATION"


async def test_resume_after_interrupted_execution(wizard, transport, ended_season):
    await run_through_approval(wizard, ended_season)

    # process stops after the first batch
    plan = await wizard.get_plan(ended_season)
    await wizard._begin_step(ended_season, WizardStep.EXECUTE)
    await wizard.executor.execute(ended_season, plan, batch_size=3, max_batches=1)
    assert len(transport.calls) == 3

    status = await wizard.resume_execution(ended_season)

    assert status["steps"][4]["status"] == "completed"
    assert status["execution"]["processed"] == 8
    assert len(transport.calls) == 8


async def test_resume_without_execution_is_rejected(wizard, ended_season):
    await run_through_approval(wizard, ended_season)

    with pytest.raises(ValidationError) as exc_info:
        await wizard.resume_execution(ended_season)
    assert exc_info.value.code == "NOTHING_TO_RESUME"


async def test_reset_before_execution(wizard, ended_season):
    await wizard.start(ended_season)
    await wizard.sync(ended_season)

    await wizard.reset(ended_season)

    with pytest.raises(WizardNotFoundError):
        await wizard.get_status(ended_season)
    status = await wizard.start(ended_season)
    assert status["current_step"] == 2


async def test_reset_refused_after_execution(wizard, ended_season):
    await run_through_approval(wizard, ended_season)
    await wizard.execute(ended_season, batch_size=3)

    with pytest.raises(ConflictError):
        await wizard.reset(ended_season)


async def test_supporters_paid_from_ledger_votes_alone(wizard, chain, session_factory):
    chain.add_season(3, [(5, 1000), (2, 800), (9, 600)], votes={
        5: [(address(1), 600), (address(2), 400)],
        2: [(address(3), 800)],
        9: [(address(4), 600)],
    })
    async with session_factory() as session:
        await wizard.reconciliation.resync(session, 3)

    await wizard.start(3)
    await wizard.sync(3)
    status = await wizard.compute(3, 2100)

    plan = status["step_data"]["compute"]["plan"]
    supporter_items = [item for item in plan["items"] if item["category"] == "supporter"]
    assert [item["recipient"] for item in supporter_items] == [
        address(1), address(2), address(3), address(4)
    ]
    assert status["step_data"]["compute"]["calculation"]["remaining_pool"] == "0"
    assert plan["total_amount"] == "2100"


async def test_resume_after_crash_past_final_batch_pays_no_one_again(wizard, transport, ended_season):
    await run_through_approval(wizard, ended_season)

    # every batch is paid but the process stops before step 5 is recorded
    plan = await wizard.get_plan(ended_season)
    await wizard._begin_step(ended_season, WizardStep.EXECUTE)
    await wizard.executor.execute(ended_season, plan, batch_size=3)
    assert len(transport.calls) == 8

    status = await wizard.resume_execution(ended_season)

    assert status["steps"][4]["status"] == "completed"
    assert status["execution"]["status"] == "completed"
    assert len(transport.calls) == 8


async def test_execute_retry_after_completed_run_is_refused(wizard, transport, ended_season):
    await run_through_approval(wizard, ended_season)
    plan = await wizard.get_plan(ended_season)
    await wizard._begin_step(ended_season, WizardStep.EXECUTE)
    await wizard.executor.execute(ended_season, plan, batch_size=3)
    await wizard._fail_step(ended_season, WizardStep.EXECUTE, "worker restarted")

    with pytest.raises(ConflictError):
        await wizard.execute(ended_season, batch_size=3)
    assert len(transport.calls) == 8

    status = await wizard.resume_execution(ended_season)

    assert status["steps"][4]["status"] == "completed"
    assert len(transport.calls) == 8


async def test_concurrent_starts_share_one_wizard(wizard, session_factory, ended_season):
    first, second = await asyncio.gather(wizard.start(ended_season), wizard.start(ended_season))

    async with session_factory() as session:
        rows = await session.execute(select(func.count()).select_from(WizardProgress))

    assert rows.scalar_one() == 1
    assert first["season_number"] == second["season_number"] == ended_season
    status = await wizard.get_status(ended_season)
    assert statuses(status)[:2] == ["completed", "pending"]


async def test_step_already_running_cannot_begin_again(wizard, ended_season):
    await run_through_approval(wizard, ended_season)
    await wizard._begin_step(ended_season, WizardStep.EXECUTE)

    with pytest.raises(InvalidTransitionError):
        await wizard.execute(ended_season, batch_size=3)


async def test_concurrent_executes_run_the_distribution_once(wizard, transport, ended_season):
    await run_through_approval(wizard, ended_season)

    results = await asyncio.gather(
        wizard.execute(ended_season, batch_size=3),
        wizard.execute(ended_season, batch_size=3),
        return_exceptions=True
    )

    refused = [result for result in results if isinstance(result, Exception)]
    assert len(refused) == 1
    assert isinstance(refused[0], InvalidTransitionError)
    assert len(transport.calls) == 8
    assert len({call[2] for call in transport.calls}) == 8
