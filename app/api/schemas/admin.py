"""
Request schemas for the season administration endpoints.
"""

from typing import Optional
from pydantic import BaseModel, Field

from .common import TokenAmountField


class ComputeRewardsRequest(BaseModel):
    """Reward pool to distribute. Defaults to the configured pool."""
    total_pool: Optional[str] = TokenAmountField


class ApproveRequest(BaseModel):
    approved_by: Optional[str] = Field(
        default=None,
        max_length=100,
        description="Approver name; defaults to the authenticated admin"
    )


class ExecuteRequest(BaseModel):
    batch_size: int = Field(default=50, ge=1, le=500, description="Payments per batch")
    background: bool = Field(default=False, description="Run the distribution after responding")


class ResumeExecutionRequest(BaseModel):
    max_batches: Optional[int] = Field(default=None, ge=1, description="Upper bound on batches for this call")


class SimulateRequest(BaseModel):
    batch_size: int = Field(default=50, ge=1, le=500)
