"""
Deployment Error Hierarchy

Structured error classification for the control loop. Synchronous admin
failures travel as typed ``OperationResult`` values; exceptions are reserved
for the places that must unwind (action execution, probes, unknown ids).
"""
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(Enum):
    """Explicit error kinds carried by operation results"""
    INVALID_RANGE = "invalid_range"
    NOT_FOUND = "not_found"
    NO_PLAN_CONFIGURED = "no_plan_configured"
    MISSING_FIELD = "missing_field"


class DeploymentError(Exception):
    """
    Base class for control loop errors

    Attributes:
        message: Human-readable error message
        error_kind: Optional ErrorKind classification
        details: Extra context for logs and API payloads
    """

    def __init__(
        self,
        message: str,
        error_kind: Optional[ErrorKind] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_kind = error_kind
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.message,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "details": self.details,
        }

    def __str__(self):
        return self.message


class ValidationError(DeploymentError):
    """Out-of-range percentage or missing admin fields. Never retried."""

    def __init__(self, message: str, error_kind: ErrorKind = ErrorKind.INVALID_RANGE, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, error_kind=error_kind, details=details)


class NotFoundError(DeploymentError):
    """Unknown flag or trigger id"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, error_kind=ErrorKind.NOT_FOUND, details=details)


class ActionExecutionError(DeploymentError):
    """
    A single rollback or alert action failed

    Captured on the owning RollbackEvent; halts the remaining actions of that
    event only.
    """

    def __init__(self, message: str, action_kind: Optional[str] = None, original_error: Optional[Exception] = None):
        super().__init__(message, details={"action_kind": action_kind} if action_kind else None)
        self.action_kind = action_kind
        self.original_error = original_error


class ExternalProbeError(DeploymentError):
    """
    Health probe timeout/status mismatch or notification delivery failure

    Always caught at the call site and converted into a logged alert.
    """

    def __init__(self, message: str, target: Optional[str] = None, status_code: Optional[int] = None, original_error: Optional[Exception] = None):
        super().__init__(message, details={"target": target, "status_code": status_code})
        self.target = target
        self.status_code = status_code
        self.original_error = original_error


@dataclass(frozen=True)
class OperationResult:
    """Typed outcome of a flag mutation"""
    success: bool
    message: str
    error_kind: Optional[ErrorKind] = None

    @classmethod
    def ok(cls, message: str) -> "OperationResult":
        return cls(success=True, message=message)

    @classmethod
    def fail(cls, error_kind: ErrorKind, message: str) -> "OperationResult":
        return cls(success=False, message=message, error_kind=error_kind)

    def to_dict(self) -> Dict[str, Any]:
        if self.success:
            return {"success": True, "message": self.message}
        return {
            "success": False,
            "error": self.message,
            "error_kind": self.error_kind.value if self.error_kind else None,
        }
