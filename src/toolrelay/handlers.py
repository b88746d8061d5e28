"""Capability handler protocol and the per-call execution context."""

from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Protocol, Union, runtime_checkable

from .errors import OperationCancelledError
from .outcomes import ErrorKind, FailureOutcome, Outcome, PartialOutcome, SuccessOutcome

__all__ = [
    "CapabilityHandler",
    "ExecutionContext",
    "FunctionHandler",
    "DEFAULT_TRANSIENT_KINDS",
    "as_outcome",
]

DEFAULT_TRANSIENT_KINDS: frozenset[ErrorKind] = frozenset({ErrorKind.CONNECTION_REFUSED})


# -----------------------------------------------------------------------------
# Execution Context
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class ExecutionContext:
    """Per-call context passed to a handler.

    Attributes:
        call_id: Identifier of the call being executed.
        tool_name: Name of the tool.
        attempt: 1-based attempt number (greater than 1 on retries).
        cancel_event: Set when cancellation has been requested.
        metadata: Free-form data supplied by the host.
    """

    call_id: str
    tool_name: str
    attempt: int = 1
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def checkpoint(self) -> None:
        """Raise :class:`OperationCancelledError` if cancellation was requested."""
        if self.cancel_event.is_set():
            raise OperationCancelledError(details={"call_id": self.call_id})


# -----------------------------------------------------------------------------
# Handler Protocol
# -----------------------------------------------------------------------------


@runtime_checkable
class CapabilityHandler(Protocol):
    """Performs the side-effecting work of one tool.

    Handlers return an :data:`~toolrelay.outcomes.Outcome` for expected
    failures instead of raising. Two optional attributes are honored by
    dispatch: ``timeout`` (seconds) and ``transient_kinds`` (error kinds
    worth retrying).
    """

    async def execute(self, params: Mapping[str, Any], context: ExecutionContext) -> Outcome:
        ...


def as_outcome(value: Any) -> Outcome:
    """Wrap a plain return value in a :class:`SuccessOutcome`."""
    if isinstance(value, (SuccessOutcome, FailureOutcome, PartialOutcome)):
        return value
    return SuccessOutcome(payload=value)


SyncFunction = Callable[..., Any]
AsyncFunction = Callable[..., Awaitable[Any]]


@dataclass
class FunctionHandler:
    """Adapts a plain function into a :class:`CapabilityHandler`.

    The function may be sync or async and may accept ``(params)`` or
    ``(params, context)``. Non-outcome return values become a
    :class:`SuccessOutcome`.

    Example:
        handler = FunctionHandler(lambda params: params["text"].upper())
    """

    func: Union[SyncFunction, AsyncFunction]
    timeout: float | None = None
    transient_kinds: frozenset[ErrorKind] = DEFAULT_TRANSIENT_KINDS
    _is_async: bool = field(init=False, default=False)
    _wants_context: bool = field(init=False, default=False)

    def __post_init__(self) -> None:
        self._is_async = inspect.iscoroutinefunction(self.func)
        try:
            params = inspect.signature(self.func).parameters.values()
        except (TypeError, ValueError):
            self._wants_context = False
        else:
            positional = [
                p
                for p in params
                if p.kind in (inspect.Parameter.POSITIONAL_ONLY, inspect.Parameter.POSITIONAL_OR_KEYWORD)
            ]
            variadic = any(p.kind is inspect.Parameter.VAR_POSITIONAL for p in params)
            self._wants_context = len(positional) >= 2 or variadic
        self.transient_kinds = frozenset(ErrorKind.parse(kind) for kind in self.transient_kinds)

    async def execute(self, params: Mapping[str, Any], context: ExecutionContext) -> Outcome:
        args = (params, context) if self._wants_context else (params,)
        if self._is_async:
            result = await self.func(*args)
        else:
            result = self.func(*args)
            if inspect.isawaitable(result):
                result = await result
        return as_outcome(result)
