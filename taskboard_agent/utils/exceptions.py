"""
Standardized Exception Hierarchy for the task board agent

This module provides the exception hierarchy used across the capability
registry, the tool dispatcher, the stage pipeline, the task board store and
the realtime voice session.

Exception Categories:
- Configuration Errors: Issues with settings, environment, or initialization
- Dispatch Errors: Contract violations between the model and the registry
- Domain Errors: Handler-level failures that are carried back to the model as data
- Channel Errors: Model channel transport failures and timeouts
- Boundary Errors: Session verification failures
- Lifecycle Errors: Illegal state machine transitions

Usage:
    from taskboard_agent.utils.exceptions import (
        TaskBoardError,
        UnknownCapabilityError,
        TaskNotFoundError
    )

    try:
        registry.get(request.name)
    except UnknownCapabilityError as e:
        session.fail(e.message)
"""

from typing import Optional, Any, Dict, List


# ============================================================================
# Base Exception
# ============================================================================

class TaskBoardError(Exception):
    """
    Base exception for all task board agent errors.

    All custom exceptions inherit from this class so the service boundary
    can map them onto responses in one place.
    """

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        """
        Initialize base exception.

        Args:
            message: Human-readable error message
            error_code: Optional error code for categorization
            details: Optional dictionary with additional error context
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.details = details or {}

    @property
    def summary(self) -> str:
        """Short user-facing text. Subclasses trim internal detail here."""
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for serialization."""
        return {
            "error_type": self.__class__.__name__,
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details
        }

    def __str__(self) -> str:
        """String representation of the error."""
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


# ============================================================================
# Configuration and Initialization Errors
# ============================================================================

class ConfigurationError(TaskBoardError):
    """Raised when there's an issue with configuration or settings."""

    def __init__(
        self,
        setting_name: str,
        message: str,
        expected_value: Optional[Any] = None,
        actual_value: Optional[Any] = None
    ):
        details = {"setting_name": setting_name}
        if expected_value is not None:
            details["expected_value"] = str(expected_value)
        if actual_value is not None:
            details["actual_value"] = str(actual_value)

        super().__init__(
            message=f"Configuration error for '{setting_name}': {message}",
            error_code="CONFIG_ERROR",
            details=details
        )
        self.setting_name = setting_name


class MissingDependencyError(TaskBoardError):
    """Raised when a required optional dependency is not installed."""

    def __init__(
        self,
        package_name: str,
        install_command: Optional[str] = None,
        purpose: Optional[str] = None
    ):
        message = f"Required package '{package_name}' is not installed"
        if purpose:
            message += f" (needed for {purpose})"
        if install_command:
            message += f"\nInstall with: {install_command}"

        super().__init__(
            message=message,
            error_code="MISSING_DEPENDENCY",
            details={
                "package_name": package_name,
                "install_command": install_command,
                "purpose": purpose
            }
        )
        self.package_name = package_name


# ============================================================================
# Dispatch Errors
# ============================================================================

class DispatchError(TaskBoardError):
    """Base class for failures detected before a handler runs."""

    #: Contract errors abort the owning session instead of being fed back to the model
    aborts_session: bool = False

    def __init__(
        self,
        capability: str,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        details = dict(details or {})
        details.setdefault("capability", capability)
        super().__init__(message=message, error_code=error_code, details=details)
        self.capability = capability


class UnknownCapabilityError(DispatchError):
    """Raised when a tool call names a capability the registry does not hold."""

    aborts_session = True

    def __init__(self, capability: str):
        super().__init__(
            capability=capability,
            message=f"Unknown capability '{capability}'",
            error_code="UNKNOWN_CAPABILITY"
        )


class StageViolationError(DispatchError):
    """Raised when a capability is called outside of the stages it is tagged for."""

    aborts_session = True

    def __init__(self, capability: str, stage: str, allowed_stages: List[str]):
        super().__init__(
            capability=capability,
            message=(
                f"Capability '{capability}' is not allowed in stage '{stage}' "
                f"(allowed: {', '.join(sorted(allowed_stages))})"
            ),
            error_code="STAGE_VIOLATION",
            details={"stage": stage, "allowed_stages": sorted(allowed_stages)}
        )
        self.stage = stage
        self.allowed_stages = sorted(allowed_stages)


class InvalidArgumentsError(DispatchError):
    """
    Raised when tool-call arguments fail to parse or validate.

    ``violations`` holds one entry per schema mismatch (the schema diff):
    ``{"path": "title", "message": "123 is not of type 'string'", "validator": "type"}``.
    """

    def __init__(self, capability: str, violations: List[Dict[str, Any]]):
        self.violations = violations
        first = violations[0]["message"] if violations else "arguments did not validate"
        super().__init__(
            capability=capability,
            message=f"Invalid arguments for '{capability}': {first}",
            error_code="INVALID_ARGUMENTS",
            details={"violations": violations}
        )

    @property
    def summary(self) -> str:
        fields = sorted({v["path"] for v in self.violations if v.get("path")})
        if fields:
            return f"Invalid arguments for '{self.capability}' (check: {', '.join(fields)})"
        return f"Invalid arguments for '{self.capability}'"


# ============================================================================
# Domain Errors (carried as data)
# ============================================================================

class DomainError(TaskBoardError):
    """Handler-level failure; reported back to the model instead of aborting."""
    pass


class NotFoundError(DomainError):
    """Raised by the persistence collaborator when a record does not exist."""

    def __init__(self, resource: str, identifier: str):
        super().__init__(
            message=f"{resource} '{identifier}' not found",
            error_code="NOT_FOUND",
            details={"resource": resource, "id": identifier}
        )
        self.identifier = identifier


class TaskNotFoundError(NotFoundError):
    """Raised when a task id is not present on the board."""

    def __init__(self, task_id: str):
        super().__init__("Task", task_id)
        self.error_code = "TASK_NOT_FOUND"
        self.task_id = task_id


class SubtaskNotFoundError(NotFoundError):
    """Raised when a subtask id is not present on its task."""

    def __init__(self, task_id: str, subtask_id: str):
        super().__init__("Subtask", subtask_id)
        self.error_code = "SUBTASK_NOT_FOUND"
        self.details["task_id"] = task_id
        self.task_id = task_id
        self.subtask_id = subtask_id


class InvalidColumnError(DomainError):
    """Raised for unknown columns, stale source columns and calendar field violations."""

    def __init__(self, column: str, reason: str):
        super().__init__(
            message=f"Invalid column '{column}': {reason}",
            error_code="INVALID_COLUMN",
            details={"column": column, "reason": reason}
        )
        self.column = column
        self.reason = reason


class StorageError(DomainError):
    """Raised when persisting a task mutation fails."""

    def __init__(self, operation: str, message: str, original_error: Optional[Exception] = None):
        details = {"operation": operation}
        if original_error:
            details["original_error"] = str(original_error)
        super().__init__(
            message=f"Storage failure during {operation}: {message}",
            error_code="STORAGE_ERROR",
            details=details
        )
        self.operation = operation
        self.original_error = original_error


# ============================================================================
# Model Channel Errors
# ============================================================================

class TransportError(TaskBoardError):
    """Raised when the model channel is unreachable or returns a malformed response."""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        details = {}
        if original_error:
            details["original_error"] = f"{type(original_error).__name__}: {original_error}"
        super().__init__(message=message, error_code="TRANSPORT_ERROR", details=details)
        self.original_error = original_error


class ModelTimeoutError(TaskBoardError):
    """Raised when a model channel call exceeds its caller-supplied timeout."""

    def __init__(self, operation: str, timeout_seconds: float):
        super().__init__(
            message=f"{operation} timed out after {timeout_seconds}s",
            error_code="TIMEOUT",
            details={"operation": operation, "timeout_seconds": timeout_seconds}
        )
        self.timeout_seconds = timeout_seconds


# ============================================================================
# Boundary and Lifecycle Errors
# ============================================================================

class UnauthorizedError(TaskBoardError):
    """Raised when session verification fails at the service boundary."""

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message=message, error_code="UNAUTHORIZED")


class InvalidStateTransitionError(TaskBoardError):
    """Raised when a state machine is asked to move backwards or out of a terminal state."""

    def __init__(self, machine: str, current: str, requested: str):
        super().__init__(
            message=f"Illegal {machine} transition {current} -> {requested}",
            error_code="INVALID_TRANSITION",
            details={"machine": machine, "current": current, "requested": requested}
        )
        self.current = current
        self.requested = requested


class SessionClosedError(TaskBoardError):
    """Raised when work is submitted to a voice session that is no longer open."""

    def __init__(self, session_id: str):
        super().__init__(
            message=f"Voice session '{session_id}' is closed",
            error_code="SESSION_CLOSED",
            details={"session_id": session_id}
        )
