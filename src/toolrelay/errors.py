"""Standardized error types for the tool-call engine.

This module provides a hierarchy of error classes with consistent
JSON serialization. Errors that reach subscribers always travel inside an
``ExecutionResult``; the classes here are raised only for programming
errors (illegal transitions, registry misuse, re-entrant execution) and
to carry validation issues through the dispatch layer.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, ClassVar, Mapping, Sequence

if TYPE_CHECKING:
    from .validation import ValidationIssue


# -----------------------------------------------------------------------------
# Error Code Constants
# -----------------------------------------------------------------------------

class ErrorCode:
    """Constants for error codes used in engine responses."""

    # Registry errors
    DUPLICATE_TOOL = "duplicate_tool"
    TOOL_NOT_FOUND = "tool_not_found"
    REGISTRY_FROZEN = "registry_frozen"

    # Parameter errors
    VALIDATION_FAILED = "validation_failed"
    STRUCTURAL_DECODE_FAILED = "structural_decode_failed"

    # Lifecycle errors
    INVALID_TRANSITION = "invalid_transition"
    CALL_NOT_FOUND = "call_not_found"
    BUSY = "busy"

    # Execution errors
    EXECUTION_FAILED = "execution_failed"
    OPERATION_CANCELLED = "operation_cancelled"

    # General errors
    INTERNAL_ERROR = "internal_error"


# -----------------------------------------------------------------------------
# Base Error Class
# -----------------------------------------------------------------------------

@dataclass
class ToolError(Exception):
    """Base exception class for all engine errors.

    Attributes:
        error_code: Machine-readable error identifier.
        message: Human-readable error description.
        details: Additional structured error information.
        suggestion: Actionable guidance for recovery.
    """

    error_code: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = ""

    severity: ClassVar[str] = "error"

    def __post_init__(self) -> None:
        Exception.__init__(self, self.message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a dictionary for JSON responses."""
        result: dict[str, Any] = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = dict(self.details)
        if self.suggestion:
            result["suggestion"] = self.suggestion
        return result

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"


# -----------------------------------------------------------------------------
# Registry Errors
# -----------------------------------------------------------------------------

@dataclass
class DuplicateToolError(ToolError):
    """Raised when a tool name is registered twice."""

    error_code: str = field(default=ErrorCode.DUPLICATE_TOOL)
    message: str = field(default="Tool is already registered")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="Register each tool exactly once at startup")

    name: str = ""

    def __post_init__(self) -> None:
        if self.name and self.message == "Tool is already registered":
            self.message = f"Tool '{self.name}' is already registered"
        super().__post_init__()


@dataclass
class ToolNotFoundError(ToolError):
    """Raised when a requested tool is not in the registry."""

    error_code: str = field(default=ErrorCode.TOOL_NOT_FOUND)
    message: str = field(default="Tool not found")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="Use one of the registered tool names")

    name: str = ""

    def __post_init__(self) -> None:
        if self.name and self.message == "Tool not found":
            self.message = f"Tool '{self.name}' not found"
        super().__post_init__()


@dataclass
class RegistryFrozenError(ToolError):
    """Raised when registering a tool after the registry was frozen."""

    error_code: str = field(default=ErrorCode.REGISTRY_FROZEN)
    message: str = field(default="Tool registry is read-only once a conversation starts")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="Register all tools before freezing the registry")


# -----------------------------------------------------------------------------
# Parameter Errors
# -----------------------------------------------------------------------------

@dataclass
class ToolValidationError(ToolError):
    """A normalized parameter bag did not satisfy its tool schema.

    Carries the structured issues produced by the validator so they can be
    rendered per field.
    """

    error_code: str = field(default=ErrorCode.VALIDATION_FAILED)
    message: str = field(default="Tool parameters failed validation")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="")

    tool_name: str = ""
    issues: Sequence["ValidationIssue"] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.tool_name:
            result["tool_name"] = self.tool_name
        if self.issues:
            result["issues"] = [issue.to_dict() for issue in self.issues]
        return result

    @classmethod
    def from_issues(cls, tool_name: str, issues: Sequence["ValidationIssue"]) -> "ToolValidationError":
        """Build a single error whose message and suggestion summarize ``issues``."""
        if not issues:
            return cls(tool_name=tool_name)
        head = issues[0]
        message = f"{tool_name}: {head.message}"
        if len(issues) > 1:
            remaining = len(issues) - 1
            plural = "s" if remaining > 1 else ""
            message = f"{message} (+{remaining} more issue{plural})"
        return cls(
            message=message,
            suggestion=head.hint,
            tool_name=tool_name,
            issues=tuple(issues),
        )


# -----------------------------------------------------------------------------
# Lifecycle Errors
# -----------------------------------------------------------------------------

@dataclass
class InvalidTransitionError(ToolError):
    """Raised when a call is asked to move to a state its current state forbids."""

    error_code: str = field(default=ErrorCode.INVALID_TRANSITION)
    message: str = field(default="Invalid call state transition")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="")

    call_id: str = ""
    current: str = ""
    target: str = ""

    def __post_init__(self) -> None:
        if self.current and self.target and self.message == "Invalid call state transition":
            self.message = f"Call {self.call_id} cannot move from {self.current} to {self.target}"
        super().__post_init__()


@dataclass
class CallNotFoundError(ToolError):
    """Raised when a call id is not present in the active-calls table."""

    error_code: str = field(default=ErrorCode.CALL_NOT_FOUND)
    message: str = field(default="Unknown call id")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="Submit the call before driving its lifecycle")

    call_id: str = ""


@dataclass
class InternalBusyError(ToolError):
    """Raised for a re-entrant execution request on an executing call."""

    error_code: str = field(default=ErrorCode.BUSY)
    message: str = field(default="Call is already executing")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="Wait for the running execution to finish or cancel it")

    call_id: str = ""

    def __post_init__(self) -> None:
        if self.call_id and self.message == "Call is already executing":
            self.message = f"Call {self.call_id} is already executing"
        super().__post_init__()


# -----------------------------------------------------------------------------
# Execution Errors
# -----------------------------------------------------------------------------

@dataclass
class ExecutionError(ToolError):
    """Raised by capability handlers for failures they want classified.

    Handlers should prefer returning a ``FailureOutcome``; raising this is
    the escape hatch for deep call stacks. ``kind`` is one of the
    ``ErrorKind`` values and ``transient`` marks the failure retryable.
    """

    error_code: str = field(default=ErrorCode.EXECUTION_FAILED)
    message: str = field(default="Tool execution failed")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="")

    kind: str = "unknown"
    transient: bool = False

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["kind"] = self.kind
        result["transient"] = self.transient
        return result


@dataclass
class OperationCancelledError(ToolError):
    """Raised by handlers that observe the cancel signal at a checkpoint."""

    error_code: str = field(default=ErrorCode.OPERATION_CANCELLED)
    message: str = field(default="The operation was cancelled")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="")


# -----------------------------------------------------------------------------
# Utility Functions
# -----------------------------------------------------------------------------

def error_from_dict(data: Mapping[str, Any]) -> ToolError:
    """Reconstruct a ToolError from its dictionary representation.

    Args:
        data: Dictionary with 'error' (code) and 'message' keys.

    Returns:
        ToolError instance (base class, not specific subclass).
    """
    return ToolError(
        error_code=data.get("error", ErrorCode.INTERNAL_ERROR),
        message=data.get("message", "Unknown error"),
        details=dict(data.get("details", {})),
        suggestion=data.get("suggestion", ""),
    )


__all__ = [
    "ErrorCode",
    "ToolError",
    "DuplicateToolError",
    "ToolNotFoundError",
    "RegistryFrozenError",
    "ToolValidationError",
    "InvalidTransitionError",
    "CallNotFoundError",
    "InternalBusyError",
    "ExecutionError",
    "OperationCancelledError",
    "error_from_dict",
]
