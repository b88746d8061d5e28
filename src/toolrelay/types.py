"""Core call types: states, validated calls, results and snapshots."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping

from .outcomes import ErrorInfo, ItemError

__all__ = [
    "CallState",
    "TERMINAL_STATES",
    "ValidatedCall",
    "PartialSummary",
    "ExecutionResult",
    "CallSnapshot",
]


class CallState(str, Enum):
    QUEUED = "queued"
    AWAITING_APPROVAL = "awaiting_approval"
    EXECUTING = "executing"
    SUCCEEDED = "succeeded"
    PARTIALLY_SUCCEEDED = "partially_succeeded"
    FAILED = "failed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {
        CallState.SUCCEEDED,
        CallState.PARTIALLY_SUCCEEDED,
        CallState.FAILED,
        CallState.REJECTED,
        CallState.CANCELLED,
    }
)


@dataclass(slots=True, frozen=True)
class ValidatedCall:
    """A schema-validated tool invocation ready for the lifecycle manager."""

    id: str
    tool_name: str
    params: Mapping[str, Any]
    created_at: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tool_name": self.tool_name,
            "params": dict(self.params),
            "created_at": self.created_at,
        }


@dataclass(slots=True, frozen=True)
class PartialSummary:
    success_count: int
    failure_count: int
    per_item_errors: tuple[ItemError, ...]
    committed_payload: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "per_item_errors": [item.to_dict() for item in self.per_item_errors],
            "committed_payload": self.committed_payload,
        }


@dataclass(slots=True, frozen=True)
class ExecutionResult:
    """Terminal result of one call.

    Exactly the fields meaningful for ``state`` are set; construction
    fails for any other combination.

    Attributes:
        call_id: Identifier of the call.
        state: Terminal state reached.
        payload: Handler payload (``SUCCEEDED`` only).
        error: Failure description (``FAILED`` only).
        partial: Per-item summary (``PARTIALLY_SUCCEEDED`` only).
        feedback: Optional reviewer feedback (``REJECTED``) or note.
        attempts: Number of handler invocations made.
    """

    call_id: str
    state: CallState
    payload: Any = None
    error: ErrorInfo | None = None
    partial: PartialSummary | None = None
    feedback: str = ""
    attempts: int = 0

    def __post_init__(self) -> None:
        state = self.state
        if not state.is_terminal:
            raise ValueError(f"ExecutionResult requires a terminal state, got {state.value}")
        if state is CallState.FAILED:
            if self.error is None:
                raise ValueError("A failed result must carry an error")
        elif self.error is not None:
            raise ValueError(f"A {state.value} result cannot carry an error")
        if state is CallState.PARTIALLY_SUCCEEDED:
            partial = self.partial
            if partial is None:
                raise ValueError("A partially succeeded result must carry a partial summary")
            if partial.success_count <= 0 or partial.failure_count <= 0:
                raise ValueError("A partially succeeded result needs both successes and failures")
            if len(partial.per_item_errors) != partial.failure_count:
                raise ValueError("per_item_errors must match failure_count")
        elif self.partial is not None:
            raise ValueError(f"A {state.value} result cannot carry a partial summary")
        if state is not CallState.SUCCEEDED and self.payload is not None:
            raise ValueError(f"A {state.value} result cannot carry a payload")

    @property
    def ok(self) -> bool:
        return self.state in (CallState.SUCCEEDED, CallState.PARTIALLY_SUCCEEDED)

    def to_dict(self) -> dict[str, Any]:
        return {
            "call_id": self.call_id,
            "state": self.state.value,
            "payload": self.payload,
            "error": self.error.to_dict() if self.error else None,
            "partial": self.partial.to_dict() if self.partial else None,
            "feedback": self.feedback,
            "attempts": self.attempts,
        }


@dataclass(slots=True, frozen=True)
class CallSnapshot:
    """Complete view of a call at one point of its lifecycle.

    ``to_dict`` always produces the same keys; fields that do not apply to
    the current state are ``None`` (or empty) rather than missing.
    """

    call_id: str
    tool_name: str
    state: CallState
    params: Mapping[str, Any] = field(default_factory=dict)
    created_at: float = 0.0
    updated_at: float = 0.0
    attempts: int = 0
    result: ExecutionResult | None = None
    error: ErrorInfo | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def to_dict(self) -> dict[str, Any]:
        result = self.result
        error = self.error or (result.error if result else None)
        return {
            "call_id": self.call_id,
            "tool_name": self.tool_name,
            "state": self.state.value,
            "terminal": self.state.is_terminal,
            "params": dict(self.params),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "attempts": self.attempts,
            "payload": result.payload if result else None,
            "error": error.to_dict() if error else None,
            "partial": result.partial.to_dict() if result and result.partial else None,
            "feedback": result.feedback if result else "",
        }
