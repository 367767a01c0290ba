"""
API dependencies for FastAPI endpoints.
Provides reusable dependency functions for validation and service access.
"""

from fastapi import HTTPException, Path, status

import structlog

from app.services.wizard.finalization_wizard import FinalizationWizard, get_finalization_wizard


logger = structlog.get_logger(__name__)


async def validate_season_param(
    season_number: int = Path(..., description="Season number")
) -> int:
    """Validate season number path parameter."""
    if season_number < 1:
        logger.warning("Invalid season number provided", season_number=season_number)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error": "INVALID_SEASON_NUMBER",
                "message": "Season numbers start at 1"
            }
        )
    return season_number


async def get_wizard() -> FinalizationWizard:
    """Finalization wizard dependency."""
    return await get_finalization_wizard()
