"""toolrelay: turns streamed model output into validated, executed tool calls."""

from .dispatch import ExecutorDispatch, classify_exception
from .engine import ToolCallEngine
from .errors import (
    CallNotFoundError,
    DuplicateToolError,
    ExecutionError,
    InternalBusyError,
    InvalidTransitionError,
    RegistryFrozenError,
    ToolError,
    ToolNotFoundError,
    ToolValidationError,
)
from .events import CallEvent, EventEmitter, EventStream, JsonlEventSink
from .handlers import CapabilityHandler, ExecutionContext, FunctionHandler
from .lifecycle import ApprovalDecision, AutoApprove, CallbackApproval, CallLifecycleManager, ManualApproval
from .outcomes import ErrorInfo, ErrorKind, FailureOutcome, ItemError, Outcome, PartialOutcome, SuccessOutcome
from .registry import ToolRegistry
from .schema import FieldShape, FieldSpec, ToolCategory, ToolSchema
from .settings import EngineSettings, load_settings
from .types import CallSnapshot, CallState, ExecutionResult, ValidatedCall
from .validation import SchemaValidator, ValidationIssue

__version__ = "0.1.0"

__all__ = [
    "ToolCallEngine",
    "ToolRegistry",
    "ToolSchema",
    "FieldSpec",
    "FieldShape",
    "ToolCategory",
    "EngineSettings",
    "load_settings",
    "CallState",
    "CallSnapshot",
    "ExecutionResult",
    "ValidatedCall",
    "SchemaValidator",
    "ValidationIssue",
    "CallLifecycleManager",
    "ApprovalDecision",
    "AutoApprove",
    "CallbackApproval",
    "ManualApproval",
    "ExecutorDispatch",
    "classify_exception",
    "CapabilityHandler",
    "ExecutionContext",
    "FunctionHandler",
    "CallEvent",
    "EventEmitter",
    "EventStream",
    "JsonlEventSink",
    "ErrorKind",
    "ErrorInfo",
    "ItemError",
    "Outcome",
    "SuccessOutcome",
    "FailureOutcome",
    "PartialOutcome",
    "ToolError",
    "ToolValidationError",
    "ExecutionError",
    "InternalBusyError",
    "InvalidTransitionError",
    "CallNotFoundError",
    "RegistryFrozenError",
    "DuplicateToolError",
    "ToolNotFoundError",
]
