"""
Admin API routes for season finalization and reward distribution.
"""

from typing import Optional
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, status

from app.api.dependencies import get_wizard, validate_season_param
from app.api.schemas.admin import (
    ApproveRequest, ComputeRewardsRequest, ExecuteRequest,
    ResumeExecutionRequest, SimulateRequest
)
from app.api.schemas.common import SuccessResponse, create_success_response
from app.core.exceptions import SeasonRewardsException
from app.services.distribution.executor import progress_to_dict
from app.services.snapshot import FINALIZATION_LOOKBACK
from app.services.wizard.finalization_wizard import FinalizationWizard
from app.utils.validation import AmountValidator
from .admin_auth import get_admin_identity, require_admin_auth

import structlog

logger = structlog.get_logger(__name__)

# Create admin router
admin_router = APIRouter()


def _internal_error(action: str, e: Exception) -> HTTPException:
    logger.error(f"Error during {action}", error=str(e))
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"Failed to {action}"
    )


@admin_router.get(
    "/finalizations/detect",
    response_model=SuccessResponse,
    summary="Detect Finalized Seasons",
    description="List recently finalized seasons that have no snapshot yet"
)
async def detect_finalizations(
    lookback: int = Query(default=FINALIZATION_LOOKBACK, ge=1, le=50),
    auth: dict = Depends(require_admin_auth),
    wizard: FinalizationWizard = Depends(get_wizard)
):
    try:
        async with wizard.session_factory() as session:
            seasons = await wizard.snapshots.detect_new_finalizations(session, wizard.chain, lookback)

        return create_success_response(
            data={"seasons": seasons, "count": len(seasons)},
            message=f"Found {len(seasons)} season(s) awaiting finalization"
        )
    except SeasonRewardsException:
        raise
    except Exception as e:
        raise _internal_error("detect finalizations", e)


@admin_router.post(
    "/{season_number}/wizard",
    response_model=SuccessResponse,
    summary="Start Finalization Wizard",
    description="Start a season's finalization wizard, or return the existing one"
)
async def start_wizard(
    season_number: int = Depends(validate_season_param),
    auth: dict = Depends(require_admin_auth),
    wizard: FinalizationWizard = Depends(get_wizard)
):
    try:
        wizard_status = await wizard.start(season_number)

        logger.info(
            "Admin started finalization wizard",
            season_number=season_number,
            admin=get_admin_identity(auth),
            current_step=wizard_status["current_step"]
        )

        return create_success_response(data=wizard_status, message="Wizard ready")
    except SeasonRewardsException:
        raise
    except Exception as e:
        raise _internal_error("start wizard", e)


@admin_router.get(
    "/{season_number}/wizard",
    response_model=SuccessResponse,
    summary="Wizard Status"
)
async def get_wizard_status(
    season_number: int = Depends(validate_season_param),
    auth: dict = Depends(require_admin_auth),
    wizard: FinalizationWizard = Depends(get_wizard)
):
    try:
        return create_success_response(data=await wizard.get_status(season_number))
    except SeasonRewardsException:
        raise
    except Exception as e:
        raise _internal_error("get wizard status", e)


@admin_router.delete(
    "/{season_number}/wizard",
    response_model=SuccessResponse,
    summary="Reset Wizard",
    description="Delete a wizard that has not started executing payments"
)
async def reset_wizard(
    season_number: int = Depends(validate_season_param),
    auth: dict = Depends(require_admin_auth),
    wizard: FinalizationWizard = Depends(get_wizard)
):
    try:
        await wizard.reset(season_number)

        logger.warning("Admin reset finalization wizard", season_number=season_number, admin=get_admin_identity(auth))

        return create_success_response(
            data={"season_number": season_number, "reset": True},
            message="Wizard reset"
        )
    except SeasonRewardsException:
        raise
    except Exception as e:
        raise _internal_error("reset wizard", e)


@admin_router.post(
    "/{season_number}/wizard/validate",
    response_model=SuccessResponse,
    summary="Force Validation",
    description="Re-run the season validation check"
)
async def force_validate(
    season_number: int = Depends(validate_season_param),
    auth: dict = Depends(require_admin_auth),
    wizard: FinalizationWizard = Depends(get_wizard)
):
    try:
        result = await wizard.force_validate(season_number)
        message = "Season ready for finalization" if result["can_finalize"] else "Season not ready"
        return create_success_response(data=result, message=message)
    except SeasonRewardsException:
        raise
    except Exception as e:
        raise _internal_error("validate season", e)


@admin_router.post(
    "/{season_number}/wizard/sync",
    response_model=SuccessResponse,
    summary="Sync & Rank",
    description="Refresh vote data, rank the leaderboard and write the season snapshot"
)
async def sync_season(
    season_number: int = Depends(validate_season_param),
    auth: dict = Depends(require_admin_auth),
    wizard: FinalizationWizard = Depends(get_wizard)
):
    try:
        return create_success_response(data=await wizard.sync(season_number), message="Season synced")
    except SeasonRewardsException:
        raise
    except Exception as e:
        raise _internal_error("sync season", e)


@admin_router.post(
    "/{season_number}/wizard/compute",
    response_model=SuccessResponse,
    summary="Compute Rewards",
    description="Compute rewards and the distribution plan for the top ranked content"
)
async def compute_rewards(
    request: Optional[ComputeRewardsRequest] = None,
    season_number: int = Depends(validate_season_param),
    auth: dict = Depends(require_admin_auth),
    wizard: FinalizationWizard = Depends(get_wizard)
):
    request = request or ComputeRewardsRequest()
    try:
        total_pool = AmountValidator.parse_amount(request.total_pool) if request.total_pool is not None else None
        wizard_status = await wizard.compute(season_number, total_pool)
        return create_success_response(data=wizard_status, message="Rewards computed")
    except SeasonRewardsException:
        raise
    except Exception as e:
        raise _internal_error("compute rewards", e)


@admin_router.post(
    "/{season_number}/wizard/approve",
    response_model=SuccessResponse,
    summary="Approve Distribution"
)
async def approve_distribution(
    request: Optional[ApproveRequest] = None,
    season_number: int = Depends(validate_season_param),
    auth: dict = Depends(require_admin_auth),
    wizard: FinalizationWizard = Depends(get_wizard)
):
    request = request or ApproveRequest()
    try:
        approved_by = request.approved_by or get_admin_identity(auth)
        wizard_status = await wizard.approve(season_number, approved_by)

        logger.info("Distribution approved", season_number=season_number, approved_by=approved_by)

        return create_success_response(data=wizard_status, message="Distribution approved")
    except SeasonRewardsException:
        raise
    except Exception as e:
        raise _internal_error("approve distribution", e)


async def _execute_in_background(wizard: FinalizationWizard, season_number: int, batch_size: int) -> None:
    try:
        await wizard.execute(season_number, batch_size)
    except Exception as e:
        logger.error("Background distribution failed", season_number=season_number, error=str(e))


@admin_router.post(
    "/{season_number}/wizard/execute",
    response_model=SuccessResponse,
    summary="Execute Distribution",
    description="Pay the approved plan in batches"
)
async def execute_distribution(
    background_tasks: BackgroundTasks,
    request: Optional[ExecuteRequest] = None,
    season_number: int = Depends(validate_season_param),
    auth: dict = Depends(require_admin_auth),
    wizard: FinalizationWizard = Depends(get_wizard)
):
    request = request or ExecuteRequest()
    try:
        logger.info(
            "Admin started distribution",
            season_number=season_number,
            admin=get_admin_identity(auth),
            batch_size=request.batch_size,
            background=request.background
        )

        if request.background:
            await wizard.get_plan(season_number)
            background_tasks.add_task(_execute_in_background, wizard, season_number, request.batch_size)
            return create_success_response(
                data={"season_number": season_number, "scheduled": True},
                message="Distribution scheduled"
            )

        wizard_status = await wizard.execute(season_number, request.batch_size)
        return create_success_response(data=wizard_status, message="Distribution executed")
    except SeasonRewardsException:
        raise
    except Exception as e:
        raise _internal_error("execute distribution", e)


@admin_router.post(
    "/{season_number}/wizard/resume",
    response_model=SuccessResponse,
    summary="Resume Distribution"
)
async def resume_distribution(
    request: Optional[ResumeExecutionRequest] = None,
    season_number: int = Depends(validate_season_param),
    auth: dict = Depends(require_admin_auth),
    wizard: FinalizationWizard = Depends(get_wizard)
):
    request = request or ResumeExecutionRequest()
    try:
        wizard_status = await wizard.resume_execution(season_number, request.max_batches)
        return create_success_response(data=wizard_status, message="Distribution resumed")
    except SeasonRewardsException:
        raise
    except Exception as e:
        raise _internal_error("resume distribution", e)


@admin_router.get(
    "/{season_number}/execution",
    response_model=SuccessResponse,
    summary="Execution Progress"
)
async def get_execution_progress(
    season_number: int = Depends(validate_season_param),
    auth: dict = Depends(require_admin_auth),
    wizard: FinalizationWizard = Depends(get_wizard)
):
    try:
        progress = await wizard.executor.get_progress(season_number)
        return create_success_response(data=progress_to_dict(progress))
    except SeasonRewardsException:
        raise
    except Exception as e:
        raise _internal_error("get execution progress", e)


@admin_router.get(
    "/{season_number}/reconciliation",
    response_model=SuccessResponse,
    summary="Check Reconciliation",
    description="Compare cached vote totals with the voting ledger"
)
async def check_reconciliation(
    season_number: int = Depends(validate_season_param),
    auth: dict = Depends(require_admin_auth),
    wizard: FinalizationWizard = Depends(get_wizard)
):
    try:
        async with wizard.session_factory() as session:
            report = await wizard.reconciliation.check_discrepancy(session, season_number)
        return create_success_response(
            data=report.to_dict(),
            message="In sync" if report.in_sync else "Out of sync"
        )
    except SeasonRewardsException:
        raise
    except Exception as e:
        raise _internal_error("check reconciliation", e)


@admin_router.post(
    "/{season_number}/resync",
    response_model=SuccessResponse,
    summary="Re-sync Vote Cache"
)
async def resync_season(
    season_number: int = Depends(validate_season_param),
    auth: dict = Depends(require_admin_auth),
    wizard: FinalizationWizard = Depends(get_wizard)
):
    try:
        async with wizard.session_factory() as session:
            report = await wizard.reconciliation.resync(session, season_number)
        return create_success_response(data=report.to_dict(), message="Vote cache re-synced")
    except SeasonRewardsException:
        raise
    except Exception as e:
        raise _internal_error("re-sync season", e)


@admin_router.get(
    "/{season_number}/plan/recipients",
    response_model=SuccessResponse,
    summary="Validate Plan Recipients"
)
async def validate_plan_recipients(
    season_number: int = Depends(validate_season_param),
    auth: dict = Depends(require_admin_auth),
    wizard: FinalizationWizard = Depends(get_wizard)
):
    try:
        report = await wizard.validate_plan_recipients(season_number)
        return create_success_response(data=report.to_dict())
    except SeasonRewardsException:
        raise
    except Exception as e:
        raise _internal_error("validate recipients", e)


@admin_router.post(
    "/{season_number}/plan/simulate",
    response_model=SuccessResponse,
    summary="Simulate Distribution",
    description="Describe batching and duration of the plan without paying anyone"
)
async def simulate_distribution(
    request: Optional[SimulateRequest] = None,
    season_number: int = Depends(validate_season_param),
    auth: dict = Depends(require_admin_auth),
    wizard: FinalizationWizard = Depends(get_wizard)
):
    request = request or SimulateRequest()
    try:
        return create_success_response(data=await wizard.simulate_distribution(season_number, request.batch_size))
    except SeasonRewardsException:
        raise
    except Exception as e:
        raise _internal_error("simulate distribution", e)


@admin_router.get(
    "/{season_number}/leaderboard",
    response_model=SuccessResponse,
    summary="Finalized Leaderboard"
)
async def get_finalized_leaderboard(
    season_number: int = Depends(validate_season_param),
    limit: Optional[int] = Query(default=None, ge=1, le=1000),
    auth: dict = Depends(require_admin_auth),
    wizard: FinalizationWizard = Depends(get_wizard)
):
    try:
        async with wizard.session_factory() as session:
            snapshot = await wizard.snapshots.get_finalized_leaderboard(session, season_number)
            entries = snapshot.entries[:limit] if limit else snapshot.entries

            data = {
                "season_number": snapshot.season_number,
                "start_time": snapshot.start_time.isoformat(),
                "end_time": snapshot.end_time.isoformat(),
                "total_votes": str(snapshot.total_votes),
                "total_content": snapshot.total_content,
                "snapshot_hash": snapshot.snapshot_hash,
                "finalized_at": snapshot.finalized_at.isoformat(),
                "rewards_distributed": snapshot.rewards_distributed,
                "distribution_completed_at": (
                    snapshot.distribution_completed_at.isoformat()
                    if snapshot.distribution_completed_at else None
                ),
                "entries": [
                    {
                        "rank": entry.rank,
                        "content_id": entry.content_id,
                        "total_votes": str(entry.total_votes),
                        "percentage_of_total": entry.percentage_of_total,
                        "creator_address": entry.creator_address,
                        "title": entry.title,
                    }
                    for entry in entries
                ],
            }

        return create_success_response(data=data)
    except SeasonRewardsException:
        raise
    except Exception as e:
        raise _internal_error("get finalized leaderboard", e)
