"""Executor dispatch: handler invocation, timeouts, retries and error kinds.

No exception raised by a handler escapes :meth:`ExecutorDispatch.dispatch`;
every failure is returned as a :class:`~toolrelay.outcomes.FailureOutcome`
with a normalized :class:`~toolrelay.outcomes.ErrorKind`.
"""

from __future__ import annotations

import asyncio
import logging
import socket
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterator, cast

import httpx
from tenacity import AsyncRetrying, RetryCallState, retry_if_result, stop_after_attempt, wait_exponential

from .errors import ExecutionError, OperationCancelledError, ToolError, ToolNotFoundError, ToolValidationError
from .handlers import DEFAULT_TRANSIENT_KINDS, CapabilityHandler, ExecutionContext, as_outcome
from .outcomes import ErrorInfo, ErrorKind, FailureOutcome, Outcome
from .registry import ToolRegistry
from .schema import ToolSchema
from .settings import EngineSettings
from .types import ValidatedCall

__all__ = [
    "ExecutorDispatch",
    "DispatchResult",
    "classify_exception",
    "resolve_timeout",
]

LOGGER = logging.getLogger(__name__)

_MAX_CAUSE_DEPTH = 8
_DNS_MARKERS = (
    "name or service not known",
    "nodename nor servname",
    "getaddrinfo failed",
    "temporary failure in name resolution",
    "no address associated",
)
_REFUSED_MARKERS = ("connection refused", "errno 111", "actively refused")
_HINTS = {
    ErrorKind.TIMEOUT: "the operation took too long; retry with a smaller request or a longer timeout",
    ErrorKind.CONNECTION_REFUSED: "the remote service is not accepting connections; check that it is running",
    ErrorKind.DNS_FAILURE: "check the host name for typos",
    ErrorKind.PERMISSION: "the target is outside the allowed area or not writable",
    ErrorKind.NOT_FOUND: "check that the path or resource exists",
    ErrorKind.VALIDATION: "fix the parameters and call the tool again",
}


# -----------------------------------------------------------------------------
# Classification
# -----------------------------------------------------------------------------


def _iter_chain(exc: BaseException) -> Iterator[BaseException]:
    seen: set[int] = set()
    current: BaseException | None = exc
    depth = 0
    while current is not None and id(current) not in seen and depth < _MAX_CAUSE_DEPTH:
        seen.add(id(current))
        yield current
        current = current.__cause__ or current.__context__
        depth += 1


def _kind_of(exc: BaseException) -> ErrorKind | None:
    if isinstance(exc, ExecutionError):
        return ErrorKind.parse(exc.kind)
    if isinstance(exc, ToolValidationError):
        return ErrorKind.VALIDATION
    if isinstance(exc, ToolNotFoundError):
        return ErrorKind.NOT_FOUND
    if isinstance(exc, (TimeoutError, httpx.TimeoutException)):
        return ErrorKind.TIMEOUT
    if isinstance(exc, socket.gaierror):
        return ErrorKind.DNS_FAILURE
    if isinstance(exc, ConnectionRefusedError):
        return ErrorKind.CONNECTION_REFUSED
    if isinstance(exc, httpx.ConnectError):
        text = str(exc).lower()
        if any(marker in text for marker in _DNS_MARKERS):
            return ErrorKind.DNS_FAILURE
        if any(marker in text for marker in _REFUSED_MARKERS):
            return ErrorKind.CONNECTION_REFUSED
        return None
    if isinstance(exc, PermissionError):
        return ErrorKind.PERMISSION
    if isinstance(exc, (FileNotFoundError, NotADirectoryError)):
        return ErrorKind.NOT_FOUND
    return None


def _describe(exc: BaseException) -> str:
    if isinstance(exc, ToolError):
        return exc.message
    text = str(exc).strip()
    name = type(exc).__name__
    return f"{name}: {text}" if text else name


def classify_exception(exc: BaseException) -> ErrorInfo:
    """Map an exception, following its cause chain, to an :class:`ErrorInfo`."""
    kind = ErrorKind.UNKNOWN
    source: BaseException = exc
    for candidate in _iter_chain(exc):
        found = _kind_of(candidate)
        if found is not None:
            kind = found
            source = candidate
            break
    details: dict[str, Any] = {"exception": type(exc).__name__}
    hint = _HINTS.get(kind, "")
    transient = False
    if isinstance(source, ToolError):
        details.update(source.details)
        hint = source.suggestion or hint
        transient = bool(getattr(source, "transient", False))
    if isinstance(source, ToolValidationError):
        details["issues"] = [issue.to_dict() for issue in source.issues]
    return ErrorInfo(kind=kind, message=_describe(exc), hint=hint, transient=transient, details=details)


def resolve_timeout(handler: CapabilityHandler, schema: ToolSchema | None, default: float | None) -> float | None:
    """Handler-declared timeout, else the schema's, else ``default``."""
    declared = getattr(handler, "timeout", None)
    if declared is not None:
        return float(declared)
    if schema is not None and schema.timeout is not None:
        return float(schema.timeout)
    return default


# -----------------------------------------------------------------------------
# Dispatch
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class DispatchResult:
    """Final outcome of a dispatch plus bookkeeping.

    Attributes:
        outcome: Last outcome produced (after any retries).
        attempts: Handler invocations made; 0 when no handler was found.
        duration_ms: Wall time spent in dispatch.
    """

    outcome: Outcome
    attempts: int
    duration_ms: float = 0.0


class ExecutorDispatch:
    """Invokes registered handlers with timeout and retry policy.

    Args:
        registry: Registry used to resolve tool names.
        settings: Engine settings (timeout default, retry policy).
        sleep: Awaitable sleep used between retries; injectable for tests.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        settings: EngineSettings | None = None,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._registry = registry
        self._settings = settings or EngineSettings()
        self._sleep = sleep

    @property
    def settings(self) -> EngineSettings:
        return self._settings

    async def dispatch(self, call: ValidatedCall, context: ExecutionContext) -> DispatchResult:
        """Run ``call`` to a final outcome.

        Transient failures are retried with exponential backoff up to
        ``settings.max_retries`` times. Validation failures and cancelled
        calls are never retried.
        """

        start = time.perf_counter()
        registration = self._registry.get(call.tool_name)
        if registration is None:
            error = ErrorInfo(
                kind=ErrorKind.NOT_FOUND,
                message=f"No handler registered for tool '{call.tool_name}'",
                hint="register the tool before dispatching calls to it",
            )
            return DispatchResult(FailureOutcome(error), attempts=0)

        handler = registration.handler
        timeout = resolve_timeout(handler, registration.schema, self._settings.default_timeout)
        transient_kinds = frozenset(
            ErrorKind.parse(kind) for kind in getattr(handler, "transient_kinds", DEFAULT_TRANSIENT_KINDS)
        )

        attempts = 0
        outcome: Outcome | None = None
        async for attempt in self._retrying(call, context):
            if outcome is not None and context.cancelled:
                break
            with attempt:
                attempts = attempt.retry_state.attempt_number
                context.attempt = attempts
                outcome = await self._invoke_once(handler, call, context, timeout, transient_kinds)
            if not attempt.retry_state.outcome.failed:
                attempt.retry_state.set_result(outcome)

        outcome = cast(Outcome, outcome)
        if self._should_retry(outcome, context) and attempts > self._settings.max_retries:
            LOGGER.warning("Tool %s (call_id=%s) failed after %d attempts", call.tool_name, call.id, attempts)
        duration_ms = (time.perf_counter() - start) * 1000
        return DispatchResult(outcome, attempts=attempts, duration_ms=duration_ms)

    def _retrying(self, call: ValidatedCall, context: ExecutionContext) -> AsyncRetrying:
        def log_retry(state: RetryCallState) -> None:
            failure = state.outcome.result() if state.outcome is not None else None
            kind = failure.error.kind.value if isinstance(failure, FailureOutcome) else "unknown"
            delay = state.next_action.sleep if state.next_action is not None else 0.0
            LOGGER.info("Retrying %s (call_id=%s) after %s failure in %.2fs", call.tool_name, call.id, kind, delay)

        return AsyncRetrying(
            stop=stop_after_attempt(self._settings.max_retries + 1),
            wait=wait_exponential(
                multiplier=self._settings.retry_base_delay,
                max=self._settings.retry_max_delay,
            ),
            retry=retry_if_result(lambda outcome: self._should_retry(outcome, context)),
            retry_error_callback=lambda state: state.outcome.result(),
            before_sleep=log_retry,
            sleep=self._backoff_sleep,
        )

    @staticmethod
    def _should_retry(outcome: Outcome, context: ExecutionContext) -> bool:
        return isinstance(outcome, FailureOutcome) and outcome.error.transient and not context.cancelled

    async def _backoff_sleep(self, delay: float) -> None:
        await self._sleep(delay)

    async def _invoke_once(
        self,
        handler: CapabilityHandler,
        call: ValidatedCall,
        context: ExecutionContext,
        timeout: float | None,
        transient_kinds: frozenset[ErrorKind],
    ) -> Outcome:
        if self._settings.log_arguments:
            LOGGER.debug("Executing tool %s (call_id=%s) with arguments: %s", call.tool_name, call.id, dict(call.params))
        else:
            LOGGER.debug("Executing tool %s (call_id=%s)", call.tool_name, call.id)

        start = time.perf_counter()
        limit = timeout if timeout is not None and timeout > 0 else None
        scope = asyncio.timeout(limit)
        try:
            async with scope:
                result = await handler.execute(call.params, context)
        except TimeoutError as exc:
            if not scope.expired():
                return self._failure_from_exception(exc, call, transient_kinds)
            duration_ms = (time.perf_counter() - start) * 1000
            LOGGER.warning("Tool %s timed out after %.1fms (timeout=%ss)", call.tool_name, duration_ms, limit)
            error = ErrorInfo(
                kind=ErrorKind.TIMEOUT,
                message=f"Tool '{call.tool_name}' timed out after {limit:g}s",
                hint=_HINTS[ErrorKind.TIMEOUT],
                transient=ErrorKind.TIMEOUT in transient_kinds,
                details={"timeout": limit},
            )
            return FailureOutcome(error)
        except OperationCancelledError as exc:
            LOGGER.debug("Tool %s observed cancellation (call_id=%s)", call.tool_name, call.id)
            return FailureOutcome(ErrorInfo(kind=ErrorKind.UNKNOWN, message=exc.message, details={"cancelled": True}))
        except Exception as exc:
            return self._failure_from_exception(exc, call, transient_kinds)

        duration_ms = (time.perf_counter() - start) * 1000
        LOGGER.debug("Tool %s completed in %.1fms", call.tool_name, duration_ms)
        outcome = as_outcome(result)
        if isinstance(outcome, FailureOutcome):
            outcome = FailureOutcome(self._mark_transient(outcome.error, transient_kinds))
        return outcome

    def _failure_from_exception(
        self,
        exc: Exception,
        call: ValidatedCall,
        transient_kinds: frozenset[ErrorKind],
    ) -> FailureOutcome:
        error = classify_exception(exc)
        if error.kind is ErrorKind.UNKNOWN:
            LOGGER.exception("Tool %s raised an unexpected error (call_id=%s)", call.tool_name, call.id)
        else:
            LOGGER.warning("Tool %s failed with %s: %s", call.tool_name, error.kind.value, error.message)
        return FailureOutcome(self._mark_transient(error, transient_kinds))

    @staticmethod
    def _mark_transient(error: ErrorInfo, transient_kinds: frozenset[ErrorKind]) -> ErrorInfo:
        if error.kind is ErrorKind.VALIDATION:
            if not error.transient:
                return error
            return ErrorInfo(error.kind, error.message, error.hint, False, error.details)
        if error.transient or error.kind not in transient_kinds:
            return error
        return ErrorInfo(error.kind, error.message, error.hint, True, error.details)
