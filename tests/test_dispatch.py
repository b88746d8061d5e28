"""Tests for :mod:`toolrelay.dispatch` and :mod:`toolrelay.handlers`."""

from __future__ import annotations

import asyncio
import socket
from types import MappingProxyType
from typing import Any

import httpx
import pytest

from toolrelay.dispatch import ExecutorDispatch, classify_exception, resolve_timeout
from toolrelay.errors import ExecutionError, ToolValidationError
from toolrelay.handlers import ExecutionContext, FunctionHandler
from toolrelay.outcomes import ErrorKind, FailureOutcome, SuccessOutcome
from toolrelay.registry import ToolRegistry
from toolrelay.schema import FieldSpec, ToolSchema
from toolrelay.settings import EngineSettings
from toolrelay.types import ValidatedCall

FLAKY_SCHEMA = ToolSchema(name="flaky", fields=(FieldSpec("text"),), timeout=5.0)


def _call(tool_name: str = "flaky") -> ValidatedCall:
    return ValidatedCall(id="c1", tool_name=tool_name, params=MappingProxyType({"text": "x"}), created_at=0.0)


def _context(tool_name: str = "flaky") -> ExecutionContext:
    return ExecutionContext(call_id="c1", tool_name=tool_name)


class _Flaky:
    """Fails with ``exc`` for the first ``failures`` attempts."""

    timeout = None

    def __init__(self, exc: BaseException, failures: int, transient_kinds: frozenset[ErrorKind] | None = None) -> None:
        self.exc = exc
        self.failures = failures
        self.calls = 0
        if transient_kinds is not None:
            self.transient_kinds = transient_kinds

    async def execute(self, params: Any, context: ExecutionContext) -> SuccessOutcome:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc
        return SuccessOutcome({"attempt": context.attempt})


def _dispatch(handler: Any, fake_sleep: Any, **overrides: Any) -> ExecutorDispatch:
    registry = ToolRegistry()
    registry.register(FLAKY_SCHEMA, handler)
    settings = EngineSettings(retry_base_delay=0.1, retry_max_delay=1.0).with_overrides(**overrides)
    return ExecutorDispatch(registry, settings, sleep=fake_sleep)


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


class TestClassifyException:
    @pytest.mark.parametrize(
        ("exc", "kind"),
        [
            (TimeoutError("slow"), ErrorKind.TIMEOUT),
            (ConnectionRefusedError(111, "Connection refused"), ErrorKind.CONNECTION_REFUSED),
            (socket.gaierror(-2, "Name or service not known"), ErrorKind.DNS_FAILURE),
            (PermissionError("denied"), ErrorKind.PERMISSION),
            (FileNotFoundError("gone"), ErrorKind.NOT_FOUND),
            (httpx.ReadTimeout("read timed out"), ErrorKind.TIMEOUT),
            (httpx.ConnectError("[Errno -2] Name or service not known"), ErrorKind.DNS_FAILURE),
            (httpx.ConnectError("[Errno 111] Connection refused"), ErrorKind.CONNECTION_REFUSED),
            (ValueError("what"), ErrorKind.UNKNOWN),
        ],
    )
    def test_kinds(self, exc: BaseException, kind: ErrorKind) -> None:
        assert classify_exception(exc).kind is kind

    def test_cause_chain_is_followed(self) -> None:
        try:
            try:
                raise ConnectionRefusedError(111, "Connection refused")
            except ConnectionRefusedError as inner:
                raise RuntimeError("wrapper") from inner
        except RuntimeError as exc:
            info = classify_exception(exc)
        assert info.kind is ErrorKind.CONNECTION_REFUSED
        assert info.message == "RuntimeError: wrapper"
        assert info.details["exception"] == "RuntimeError"

    def test_execution_error_keeps_kind_and_hint(self) -> None:
        exc = ExecutionError(message="outside", kind="permission", suggestion="stay inside", transient=False)
        info = classify_exception(exc)
        assert info.kind is ErrorKind.PERMISSION
        assert info.hint == "stay inside"
        assert info.message == "outside"

    def test_validation_error_carries_issues(self) -> None:
        info = classify_exception(ToolValidationError(message="bad", tool_name="x"))
        assert info.kind is ErrorKind.VALIDATION


class TestPolicyHelpers:
    def test_timeout_resolution_order(self) -> None:
        handler = FunctionHandler(lambda params: None, timeout=2.0)
        assert resolve_timeout(handler, FLAKY_SCHEMA, 30.0) == 2.0
        handler = FunctionHandler(lambda params: None)
        assert resolve_timeout(handler, FLAKY_SCHEMA, 30.0) == 5.0
        assert resolve_timeout(handler, None, 30.0) == 30.0


# ---------------------------------------------------------------------------
# Retries
# ---------------------------------------------------------------------------


class TestExecutorDispatch:
    @pytest.mark.asyncio
    async def test_success_on_first_attempt(self, fake_sleep: Any) -> None:
        dispatch = _dispatch(_Flaky(RuntimeError(), 0), fake_sleep)
        result = await dispatch.dispatch(_call(), _context())
        assert isinstance(result.outcome, SuccessOutcome)
        assert result.attempts == 1
        assert fake_sleep.delays == []

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried_with_backoff(self, fake_sleep: Any) -> None:
        handler = _Flaky(ConnectionRefusedError(111, "Connection refused"), 2)
        result = await _dispatch(handler, fake_sleep).dispatch(_call(), _context())
        assert isinstance(result.outcome, SuccessOutcome)
        assert result.outcome.payload == {"attempt": 3}
        assert result.attempts == 3
        assert fake_sleep.delays == [0.1, 0.2]

    @pytest.mark.asyncio
    async def test_retries_are_capped_at_two(self, fake_sleep: Any) -> None:
        handler = _Flaky(ConnectionRefusedError(111, "Connection refused"), 10)
        result = await _dispatch(handler, fake_sleep, max_retries=5).dispatch(_call(), _context())
        assert isinstance(result.outcome, FailureOutcome)
        assert result.outcome.error.kind is ErrorKind.CONNECTION_REFUSED
        assert result.attempts == 3
        assert handler.calls == 3

    @pytest.mark.asyncio
    async def test_permanent_failure_is_not_retried(self, fake_sleep: Any) -> None:
        handler = _Flaky(PermissionError("denied"), 10)
        result = await _dispatch(handler, fake_sleep).dispatch(_call(), _context())
        assert isinstance(result.outcome, FailureOutcome)
        assert result.outcome.error.kind is ErrorKind.PERMISSION
        assert result.attempts == 1

    @pytest.mark.asyncio
    async def test_validation_failure_never_retried(self, fake_sleep: Any) -> None:
        async def invalid(params: Any) -> FailureOutcome:
            return FailureOutcome.of(ErrorKind.VALIDATION, "bad input", transient=True)

        handler = FunctionHandler(invalid)
        result = await _dispatch(handler, fake_sleep).dispatch(_call(), _context())
        assert isinstance(result.outcome, FailureOutcome)
        assert result.outcome.error.transient is False
        assert result.attempts == 1

    @pytest.mark.asyncio
    async def test_handler_marked_transient_is_retried(self, fake_sleep: Any) -> None:
        attempts: list[int] = []

        async def unavailable(params: Any, context: ExecutionContext) -> Any:
            attempts.append(context.attempt)
            if context.attempt == 1:
                return FailureOutcome.of(ErrorKind.UNKNOWN, "HTTP 503", transient=True)
            return "ok"

        result = await _dispatch(FunctionHandler(unavailable), fake_sleep).dispatch(_call(), _context())
        assert isinstance(result.outcome, SuccessOutcome)
        assert attempts == [1, 2]

    @pytest.mark.asyncio
    async def test_timeout_is_classified(self, fake_sleep: Any) -> None:
        async def hang(params: Any) -> None:
            await asyncio.sleep(10)

        handler = FunctionHandler(hang, timeout=0.01)
        result = await _dispatch(handler, fake_sleep).dispatch(_call(), _context())
        assert isinstance(result.outcome, FailureOutcome)
        assert result.outcome.error.kind is ErrorKind.TIMEOUT
        assert result.outcome.error.transient is False
        assert result.attempts == 1

    @pytest.mark.asyncio
    async def test_backoff_is_bounded_by_max_delay(self, fake_sleep: Any) -> None:
        handler = _Flaky(ConnectionRefusedError(111, "Connection refused"), 2)
        result = await _dispatch(handler, fake_sleep, retry_max_delay=0.15).dispatch(_call(), _context())
        assert isinstance(result.outcome, SuccessOutcome)
        assert fake_sleep.delays == [0.1, 0.15]

    @pytest.mark.asyncio
    async def test_cancel_during_backoff_stops_retrying(self) -> None:
        context = _context()

        async def cancelling_sleep(delay: float) -> None:
            context.cancel_event.set()

        handler = _Flaky(ConnectionRefusedError(111, "Connection refused"), 10)
        registry = ToolRegistry()
        registry.register(FLAKY_SCHEMA, handler)
        dispatch = ExecutorDispatch(registry, EngineSettings(retry_base_delay=0.1), sleep=cancelling_sleep)
        result = await dispatch.dispatch(_call(), context)
        assert isinstance(result.outcome, FailureOutcome)
        assert result.attempts == 1
        assert handler.calls == 1

    @pytest.mark.asyncio
    async def test_handler_raised_timeout_keeps_its_message(self, fake_sleep: Any) -> None:
        handler = _Flaky(TimeoutError("upstream took too long"), 10)
        result = await _dispatch(handler, fake_sleep).dispatch(_call(), _context())
        assert isinstance(result.outcome, FailureOutcome)
        assert result.outcome.error.kind is ErrorKind.TIMEOUT
        assert "upstream took too long" in result.outcome.error.message
        assert "timed out after" not in result.outcome.error.message

    @pytest.mark.asyncio
    async def test_no_timeout_configured(self, fake_sleep: Any) -> None:
        registry = ToolRegistry()
        registry.register(ToolSchema(name="flaky", fields=(FieldSpec("text"),)), _Flaky(TimeoutError("slow"), 10))
        dispatch = ExecutorDispatch(registry, EngineSettings(default_timeout=None), sleep=fake_sleep)  # type: ignore[arg-type]
        result = await dispatch.dispatch(_call(), _context())
        assert isinstance(result.outcome, FailureOutcome)
        assert result.outcome.error.kind is ErrorKind.TIMEOUT
        assert result.outcome.error.message == "TimeoutError: slow"

    @pytest.mark.asyncio
    async def test_timeout_retried_when_declared_transient(self, fake_sleep: Any) -> None:
        handler = _Flaky(TimeoutError("slow"), 1, transient_kinds=frozenset({ErrorKind.TIMEOUT}))
        result = await _dispatch(handler, fake_sleep).dispatch(_call(), _context())
        assert isinstance(result.outcome, SuccessOutcome)
        assert result.attempts == 2

    @pytest.mark.asyncio
    async def test_cancelled_call_is_not_retried(self, fake_sleep: Any) -> None:
        context = _context()
        context.cancel_event.set()
        handler = _Flaky(ConnectionRefusedError(111, "Connection refused"), 10)
        result = await _dispatch(handler, fake_sleep).dispatch(_call(), context)
        assert result.attempts == 1
        assert fake_sleep.delays == []

    @pytest.mark.asyncio
    async def test_checkpoint_cancellation_becomes_failure(self, fake_sleep: Any) -> None:
        async def cooperative(params: Any, context: ExecutionContext) -> None:
            context.cancel_event.set()
            context.checkpoint()

        result = await _dispatch(FunctionHandler(cooperative), fake_sleep).dispatch(_call(), _context())
        assert isinstance(result.outcome, FailureOutcome)
        assert result.outcome.error.details["cancelled"] is True

    @pytest.mark.asyncio
    async def test_unknown_tool_is_not_found(self, fake_sleep: Any) -> None:
        dispatch = _dispatch(_Flaky(RuntimeError(), 0), fake_sleep)
        result = await dispatch.dispatch(_call("missing"), _context("missing"))
        assert isinstance(result.outcome, FailureOutcome)
        assert result.outcome.error.kind is ErrorKind.NOT_FOUND
        assert result.attempts == 0


class TestFunctionHandler:
    @pytest.mark.asyncio
    async def test_sync_function_with_context(self) -> None:
        handler = FunctionHandler(lambda params, context: context.call_id)
        outcome = await handler.execute({}, _context())
        assert outcome == SuccessOutcome("c1")

    @pytest.mark.asyncio
    async def test_outcome_is_passed_through(self) -> None:
        failure = FailureOutcome.of("not_found", "nope")
        handler = FunctionHandler(lambda params: failure)
        assert await handler.execute({}, _context()) is failure
