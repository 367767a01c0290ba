"""
Season finalization wizard.
"""

from .steps import StepStatus, WizardStep, StepState, ALLOWED_TRANSITIONS
from .finalization_wizard import FinalizationWizard, get_finalization_wizard

__all__ = [
    "StepStatus",
    "WizardStep",
    "StepState",
    "ALLOWED_TRANSITIONS",
    "FinalizationWizard",
    "get_finalization_wizard",
]
