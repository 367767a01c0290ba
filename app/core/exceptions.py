"""
Custom exception classes for the application.
Provides structured error handling across the finalization pipeline.
"""

from typing import Any, Optional, Dict


class SeasonRewardsException(Exception):
    """Base exception class for the season rewards backend."""

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"error_code": self.code, "message": self.message, "details": self.details}


class ConfigurationError(SeasonRewardsException):
    """Raised when there's a configuration error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "CONFIGURATION_ERROR", details)


class DatabaseError(SeasonRewardsException):
    """Raised when there's a database error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "DATABASE_ERROR", details)


class ValidationError(SeasonRewardsException):
    """Raised when a season or step precondition does not hold. Never auto-retried."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None, code: str = "VALIDATION_ERROR"):
        super().__init__(message, code, details)


class InvalidTransitionError(ValidationError):
    """Raised when a wizard step state change is not in the transition table."""

    def __init__(self, step: int, from_status: str, to_status: str):
        super().__init__(
            f"Step {step} cannot move from {from_status} to {to_status}",
            {"step": step, "from_status": from_status, "to_status": to_status},
            code="INVALID_TRANSITION"
        )


class ReconciliationError(SeasonRewardsException):
    """Raised when cached vote data disagrees with the voting ledger."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "RECONCILIATION_ERROR", details)


class ComputationError(SeasonRewardsException):
    """Raised when rewards cannot be computed. Fatal for the season's plan."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "COMPUTATION_ERROR", details)


class RecipientError(SeasonRewardsException):
    """Raised for a single recipient's bad address or failed payment."""

    def __init__(self, recipient: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.recipient = recipient
        super().__init__(message, "RECIPIENT_ERROR", {"recipient": recipient, **(details or {})})


class TransportError(SeasonRewardsException):
    """Raised when an external call times out or the network fails."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "TRANSPORT_ERROR", details)


class ConflictError(SeasonRewardsException):
    """Raised when an operation would race or repeat a payment run."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "CONFLICT", details)


class NotFoundError(SeasonRewardsException):
    """Raised when a requested resource is not found."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "NOT_FOUND", details)


class AuthenticationError(SeasonRewardsException):
    """Raised when authentication fails."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "AUTHENTICATION_ERROR", details)


class WizardNotFoundError(NotFoundError):
    """Raised when a season has no wizard record."""

    def __init__(self, season_number: int):
        super().__init__(
            f"No finalization wizard for season {season_number}",
            {"season_number": season_number}
        )


class SnapshotNotFoundError(NotFoundError):
    """Raised when a season has no finalized snapshot."""

    def __init__(self, season_number: int):
        super().__init__(
            f"Season {season_number} has no finalized snapshot",
            {"season_number": season_number}
        )
