"""Call lifecycle manager.

Drives each validated call through::

    QUEUED -> AWAITING_APPROVAL -> EXECUTING -> SUCCEEDED
                                            -> PARTIALLY_SUCCEEDED
                                            -> FAILED
                                            -> CANCELLED
                                -> REJECTED
    QUEUED -> FAILED   (validation failure; never dispatched)

Every transition is published through the :class:`EventEmitter` before the
next one can happen, so each call's events arrive in causal order. The
table of calls is owned by this class; a call can only be driven by one
:meth:`CallLifecycleManager.execute` at a time.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Iterable, Mapping, Sequence

from ..dispatch import ExecutorDispatch
from ..errors import CallNotFoundError, InternalBusyError, InvalidTransitionError, ToolValidationError
from ..events import EventEmitter
from ..handlers import ExecutionContext
from ..outcomes import ErrorInfo, ErrorKind, FailureOutcome, Outcome, PartialOutcome, SuccessOutcome
from ..settings import EngineSettings
from ..types import CallSnapshot, CallState, ExecutionResult, PartialSummary, ValidatedCall
from ..validation import CallIdFactory, ValidationIssue
from .approval import ApprovalDecision, ApprovalPolicy, AutoApprove, ManualApproval
from .states import check_transition

__all__ = ["CallLifecycleManager", "result_from_outcome"]

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class _CallRecord:
    call: ValidatedCall
    state: CallState = CallState.QUEUED
    updated_at: float = 0.0
    attempts: int = 0
    result: ExecutionResult | None = None
    error: ErrorInfo | None = None
    context: ExecutionContext | None = None
    approval: asyncio.Future[ApprovalDecision] | None = None
    driving: bool = False
    history: list[CallState] = field(default_factory=list)


def _all_failed_error(partial: PartialOutcome) -> ErrorInfo:
    kinds = {ErrorKind.parse(item.kind) for item in partial.per_item_errors}
    kind = kinds.pop() if len(kinds) == 1 else ErrorKind.UNKNOWN
    first = partial.per_item_errors[0].message if partial.per_item_errors else "no sub-operation succeeded"
    count = partial.failure_count
    return ErrorInfo(
        kind=kind,
        message=f"All {count} sub-operation{'s' if count != 1 else ''} failed; first error: {first}",
        hint="nothing was changed; fix the failing items and retry the whole call",
        details={"per_item_errors": [item.to_dict() for item in partial.per_item_errors]},
    )


def result_from_outcome(call_id: str, outcome: Outcome, *, attempts: int = 1) -> ExecutionResult:
    """Aggregate a handler outcome into a terminal :class:`ExecutionResult`.

    A partial outcome with no successes is a failure; one with no failures
    is a success carrying the committed payload.
    """

    if isinstance(outcome, SuccessOutcome):
        return ExecutionResult(call_id, CallState.SUCCEEDED, payload=outcome.payload, attempts=attempts)
    if isinstance(outcome, FailureOutcome):
        return ExecutionResult(call_id, CallState.FAILED, error=outcome.error, attempts=attempts)
    if isinstance(outcome, PartialOutcome):
        if outcome.success_count == 0:
            return ExecutionResult(call_id, CallState.FAILED, error=_all_failed_error(outcome), attempts=attempts)
        if outcome.failure_count == 0:
            return ExecutionResult(
                call_id, CallState.SUCCEEDED, payload=outcome.committed_payload, attempts=attempts
            )
        summary = PartialSummary(
            success_count=outcome.success_count,
            failure_count=outcome.failure_count,
            per_item_errors=outcome.per_item_errors,
            committed_payload=outcome.committed_payload,
        )
        return ExecutionResult(call_id, CallState.PARTIALLY_SUCCEEDED, partial=summary, attempts=attempts)
    raise TypeError(f"Unsupported outcome type: {type(outcome).__name__}")


class CallLifecycleManager:
    """Finite-state machine for the calls of one conversation.

    Args:
        dispatch: Executor dispatch used for approved calls.
        emitter: Receives one event per state transition.
        policy: Approval policy; defaults to auto-approval when
            ``settings.auto_approve`` is set, manual approval otherwise.
        settings: Engine settings.
        id_factory: Call id source for validation failures recorded here.
        clock: Timestamp source.
    """

    def __init__(
        self,
        dispatch: ExecutorDispatch,
        emitter: EventEmitter,
        *,
        policy: ApprovalPolicy | None = None,
        settings: EngineSettings | None = None,
        id_factory: Callable[[str], str] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._dispatch = dispatch
        self._emitter = emitter
        self._settings = settings or dispatch.settings
        if policy is None:
            policy = AutoApprove() if self._settings.auto_approve else ManualApproval()
        self._policy = policy
        self._id_factory = id_factory or CallIdFactory()
        self._clock = clock
        self._calls: dict[str, _CallRecord] = {}

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    @property
    def policy(self) -> ApprovalPolicy:
        return self._policy

    def state(self, call_id: str) -> CallState:
        return self._record(call_id).state

    def snapshot(self, call_id: str) -> CallSnapshot:
        return self._snapshot(self._record(call_id))

    def result(self, call_id: str) -> ExecutionResult | None:
        return self._record(call_id).result

    def history(self, call_id: str) -> tuple[CallState, ...]:
        return tuple(self._record(call_id).history)

    def active_call_ids(self) -> list[str]:
        return [call_id for call_id, record in self._calls.items() if not record.state.is_terminal]

    def call_ids(self) -> list[str]:
        return list(self._calls)

    def __contains__(self, call_id: object) -> bool:
        return call_id in self._calls

    # ------------------------------------------------------------------
    # Intake
    # ------------------------------------------------------------------
    def submit(self, call: ValidatedCall) -> CallSnapshot:
        """Add a validated call in ``QUEUED`` and publish it."""
        if call.id in self._calls:
            raise InvalidTransitionError(
                message=f"Call {call.id} was already submitted",
                call_id=call.id,
                current=self._calls[call.id].state.value,
                target=CallState.QUEUED.value,
            )
        record = _CallRecord(call=call, updated_at=self._clock())
        record.history.append(CallState.QUEUED)
        self._calls[call.id] = record
        return self._publish(record)

    def record_validation_failure(
        self,
        tool_name: str,
        params: Mapping[str, Any],
        issues: Sequence[ValidationIssue],
    ) -> ExecutionResult:
        """Record a call whose parameters failed validation as ``QUEUED -> FAILED``."""
        error = ToolValidationError.from_issues(tool_name, issues)
        info = ErrorInfo(
            kind=ErrorKind.VALIDATION,
            message=error.message,
            hint=error.suggestion,
            details={"issues": [issue.to_dict() for issue in issues]},
        )
        call = ValidatedCall(
            id=self._id_factory(tool_name),
            tool_name=tool_name,
            params=MappingProxyType(dict(params)),
            created_at=self._clock(),
        )
        self.submit(call)
        record = self._calls[call.id]
        record.error = info
        result = ExecutionResult(call.id, CallState.FAILED, error=info, attempts=0)
        self._finish(record, result)
        LOGGER.info("Call %s to %s failed validation: %s", call.id, tool_name, error.message)
        return result

    # ------------------------------------------------------------------
    # Approval
    # ------------------------------------------------------------------
    def approve(self, call_id: str) -> None:
        self._resolve_approval(call_id, ApprovalDecision.approve())

    def reject(self, call_id: str, feedback: str = "") -> None:
        self._resolve_approval(call_id, ApprovalDecision.deny(feedback))

    def _resolve_approval(self, call_id: str, decision: ApprovalDecision) -> None:
        record = self._record(call_id)
        target = CallState.EXECUTING if decision.approved else CallState.REJECTED
        if record.state is not CallState.AWAITING_APPROVAL:
            raise InvalidTransitionError(call_id=call_id, current=record.state.value, target=target.value)
        future = self._approval_future(record)
        if future.done():
            LOGGER.debug("Ignoring repeated approval decision for %s", call_id)
            return
        future.set_result(decision)

    def _approval_future(self, record: _CallRecord) -> asyncio.Future[ApprovalDecision]:
        if record.approval is None:
            record.approval = asyncio.get_running_loop().create_future()
        return record.approval

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------
    async def execute(self, call_id: str) -> ExecutionResult:
        """Drive ``call_id`` from its current state to a terminal result.

        Raises:
            CallNotFoundError: If the call was never submitted.
            InternalBusyError: If the call is already being driven.
            InvalidTransitionError: If the call already reached a terminal state.
        """
        record = self._record(call_id)
        if record.state is CallState.EXECUTING or record.driving:
            raise InternalBusyError(call_id=call_id)
        if record.state.is_terminal:
            raise InvalidTransitionError(
                message=f"Call {call_id} already finished as {record.state.value}",
                call_id=call_id,
                current=record.state.value,
                target=CallState.EXECUTING.value,
            )
        record.driving = True
        try:
            return await self._drive(record)
        finally:
            record.driving = False

    async def run_many(self, call_ids: Iterable[str], max_parallelism: int = 1) -> list[ExecutionResult]:
        """Execute several calls, at most ``max_parallelism`` at a time.

        Results are returned in the order of ``call_ids``.
        """
        ids = list(call_ids)
        limit = max(1, min(max_parallelism, self._settings.max_parallelism))
        if limit == 1:
            return [await self.execute(call_id) for call_id in ids]
        semaphore = asyncio.Semaphore(limit)

        async def run_one(call_id: str) -> ExecutionResult:
            async with semaphore:
                return await self.execute(call_id)

        return list(await asyncio.gather(*(run_one(call_id) for call_id in ids)))

    def cancel(self, call_id: str) -> bool:
        """Signal cooperative cancellation; only ``EXECUTING`` calls are affected."""
        record = self._record(call_id)
        if record.state is not CallState.EXECUTING or record.context is None:
            LOGGER.debug("Cancel ignored for %s in state %s", call_id, record.state.value)
            return False
        record.context.cancel_event.set()
        LOGGER.info("Cancellation requested for %s", call_id)
        return True

    def prune(self) -> int:
        """Forget terminal calls; returns how many were removed."""
        finished = [call_id for call_id, record in self._calls.items() if record.state.is_terminal]
        for call_id in finished:
            del self._calls[call_id]
        return len(finished)

    async def _drive(self, record: _CallRecord) -> ExecutionResult:
        call = record.call
        if record.state is CallState.QUEUED:
            self._transition(record, CallState.AWAITING_APPROVAL)

        decision = await self._decide(record)
        if not decision.approved:
            result = ExecutionResult(call.id, CallState.REJECTED, feedback=decision.feedback)
            self._finish(record, result)
            LOGGER.info("Call %s to %s rejected", call.id, call.tool_name)
            return result

        context = ExecutionContext(call_id=call.id, tool_name=call.tool_name)
        record.context = context
        self._transition(record, CallState.EXECUTING)
        try:
            dispatched = await self._dispatch.dispatch(call, context)
        except asyncio.CancelledError:
            record.attempts = max(record.attempts, context.attempt)
            self._finish(record, self._cancelled_result(record, "execution task was cancelled"))
            raise
        except Exception as exc:
            LOGGER.exception("Dispatch of %s failed unexpectedly", call.id)
            error = ErrorInfo(kind=ErrorKind.UNKNOWN, message=f"{type(exc).__name__}: {exc}")
            result = ExecutionResult(call.id, CallState.FAILED, error=error, attempts=context.attempt)
            self._finish(record, result)
            return result

        record.attempts = dispatched.attempts
        if context.cancelled:
            LOGGER.info("Discarding result of cancelled call %s", call.id)
            result = self._cancelled_result(record, "cancelled while executing")
        else:
            result = result_from_outcome(call.id, dispatched.outcome, attempts=dispatched.attempts)
        self._finish(record, result)
        return result

    async def _decide(self, record: _CallRecord) -> ApprovalDecision:
        future = self._approval_future(record)
        if not future.done():
            decision = await self._policy.decide(record.call)
            if decision is not None and not future.done():
                future.set_result(decision)
        return await future

    def _cancelled_result(self, record: _CallRecord, note: str) -> ExecutionResult:
        return ExecutionResult(record.call.id, CallState.CANCELLED, feedback=note, attempts=record.attempts)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _record(self, call_id: str) -> _CallRecord:
        record = self._calls.get(call_id)
        if record is None:
            raise CallNotFoundError(message=f"Unknown call id {call_id}", call_id=call_id)
        return record

    def _transition(self, record: _CallRecord, target: CallState) -> CallSnapshot:
        check_transition(record.call.id, record.state, target)
        record.state = target
        record.updated_at = self._clock()
        record.history.append(target)
        LOGGER.debug("Call %s -> %s", record.call.id, target.value)
        return self._publish(record)

    def _finish(self, record: _CallRecord, result: ExecutionResult) -> CallSnapshot:
        check_transition(record.call.id, record.state, result.state)
        record.result = result
        record.attempts = result.attempts
        record.context = None
        return self._transition(record, result.state)

    def _snapshot(self, record: _CallRecord) -> CallSnapshot:
        call = record.call
        result = record.result if record.state.is_terminal else None
        error = record.error or (result.error if result is not None else None)
        return CallSnapshot(
            call_id=call.id,
            tool_name=call.tool_name,
            state=record.state,
            params=dict(call.params),
            created_at=call.created_at,
            updated_at=record.updated_at,
            attempts=record.attempts,
            result=result,
            error=error,
        )

    def _publish(self, record: _CallRecord) -> CallSnapshot:
        snapshot = self._snapshot(record)
        self._emitter.emit(snapshot)
        return snapshot
