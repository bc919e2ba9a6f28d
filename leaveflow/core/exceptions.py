"""
Error taxonomy for the leave request core.

Every error the core raises carries a stable ErrorCode so that the HTTP API
and the chat bot render the same outcome for the same failure.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    AUTHORIZATION_FAILED = "AUTHORIZATION_FAILED"
    NOT_FOUND = "NOT_FOUND"
    INVALID_STATE = "INVALID_STATE"
    ALREADY_DECIDED = "ALREADY_DECIDED"
    COLLABORATOR_UNAVAILABLE = "COLLABORATOR_UNAVAILABLE"
    RECONCILIATION_PENDING = "RECONCILIATION_PENDING"
    STORE_ERROR = "STORE_ERROR"


class LeaveFlowError(Exception):
    """
    Base exception for all core errors.
    """

    error_code: ErrorCode = ErrorCode.VALIDATION_ERROR
    status_code: int = 400

    def __init__(
        self,
        message: str,
        error_code: Optional[ErrorCode] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.error_code.value,
            "message": self.message,
            "details": self.details,
        }

    def __str__(self) -> str:
        return f"{self.error_code.value}: {self.message}"


class ValidationError(LeaveFlowError):
    """Malformed input: missing dates, end before start, missing document."""

    error_code = ErrorCode.VALIDATION_ERROR
    status_code = 422


class AuthorizationError(LeaveFlowError):
    error_code = ErrorCode.AUTHORIZATION_FAILED
    status_code = 403


class NotFoundError(LeaveFlowError):
    error_code = ErrorCode.NOT_FOUND
    status_code = 404


class InvalidStateError(LeaveFlowError):
    """Transition not legal from the current status, including lost races."""

    error_code = ErrorCode.INVALID_STATE
    status_code = 409

    @classmethod
    def already_decided(cls, request_id: str, current_status: str) -> "InvalidStateError":
        return cls(
            "This leave request was already decided by someone else",
            error_code=ErrorCode.ALREADY_DECIDED,
            details={"leave_request_id": request_id, "current_status": current_status},
        )


class CollaboratorUnavailable(LeaveFlowError):
    """
    Verification, anchoring, storage or notification failed.

    Never surfaced by submit/decide: callers catch it, log it and carry on
    with the optional field unset or flagged pending.
    """

    error_code = ErrorCode.COLLABORATOR_UNAVAILABLE
    status_code = 503

    def __init__(self, collaborator: str, message: str = "", details: Optional[Dict[str, Any]] = None):
        self.collaborator = collaborator
        super().__init__(
            message or f"{collaborator} is unavailable",
            details={"collaborator": collaborator, **(details or {})},
        )


class ReconciliationPending(LeaveFlowError):
    """Approval stands, attendance reconciliation must be retried."""

    error_code = ErrorCode.RECONCILIATION_PENDING
    status_code = 202


class StoreError(LeaveFlowError):
    """Raised by store implementations when the backing store fails."""

    error_code = ErrorCode.STORE_ERROR
    status_code = 500
