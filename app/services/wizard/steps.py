"""
Finalization wizard steps and the allowed status transitions.
"""

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional

from app.core.exceptions import InvalidTransitionError


class StepStatus(Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ERROR = "error"


class WizardStep(IntEnum):
    VALIDATE = 1
    SYNC = 2
    COMPUTE = 3
    REVIEW = 4
    EXECUTE = 5

    @property
    def title(self) -> str:
        return STEP_TITLES[self]

    @property
    def key(self) -> str:
        return self.name.lower()


STEP_TITLES = {
    WizardStep.VALIDATE: "Season Status & Validation",
    WizardStep.SYNC: "Data Sync & Final Ranking",
    WizardStep.COMPUTE: "Winner Selection & Reward Calculation",
    WizardStep.REVIEW: "Review & Approval",
    WizardStep.EXECUTE: "Execution & Monitoring",
}

ALLOWED_TRANSITIONS = {
    StepStatus.PENDING: {StepStatus.IN_PROGRESS},
    StepStatus.IN_PROGRESS: {StepStatus.COMPLETED, StepStatus.ERROR},
    StepStatus.ERROR: {StepStatus.IN_PROGRESS},
    StepStatus.COMPLETED: set(),
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class StepState:
    step: WizardStep
    status: StepStatus = StepStatus.PENDING
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    error: Optional[str] = None

    def transition(self, to_status: StepStatus, error: Optional[str] = None) -> "StepState":
        if to_status not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(int(self.step), self.status.value, to_status.value)

        if to_status == StepStatus.IN_PROGRESS:
            return replace(self, status=to_status, started_at=_now(), completed_at=None, error=None)
        if to_status == StepStatus.COMPLETED:
            return replace(self, status=to_status, completed_at=_now(), error=None)
        return replace(self, status=to_status, error=error)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step": int(self.step),
            "name": self.step.title,
            "status": self.status.value,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StepState":
        return cls(
            step=WizardStep(data["step"]),
            status=StepStatus(data["status"]),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            error=data.get("error")
        )


def initial_steps() -> List[StepState]:
    return [StepState(step=step) for step in WizardStep]


def steps_to_json(steps: List[StepState]) -> List[Dict[str, Any]]:
    return [state.to_dict() for state in steps]


def steps_from_json(data: List[Dict[str, Any]]) -> List[StepState]:
    steps = {state.step: state for state in (StepState.from_dict(item) for item in data)}
    return [steps.get(step, StepState(step=step)) for step in WizardStep]
