"""Engine façade wiring the tool-call chain for one conversation turn.

Streamed model output goes in through :meth:`ToolCallEngine.feed`; closed
tool blocks are normalized, validated and queued with the lifecycle
manager, and every state change is published through the event emitter.
Execution is driven separately with :meth:`ToolCallEngine.drain` or
:meth:`ToolCallEngine.run_call` so the host decides when side effects run.

Example:
    registry = ToolRegistry()
    register_builtin_tools(registry, workspace_root)
    engine = ToolCallEngine(registry, settings=load_settings())
    for chunk in stream:
        engine.feed(chunk)
    engine.finalize()
    results = await engine.drain()
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Mapping

from .dispatch import ExecutorDispatch
from .events import EventEmitter, EventStream, Subscriber
from .lifecycle import ApprovalPolicy, CallLifecycleManager
from .parsing import DraftStatus, DraftUpdate, ParameterNormalizer, TagScanner, ToolInvocationDraft
from .registry import ToolRegistry
from .settings import EngineSettings
from .types import CallSnapshot, ExecutionResult
from .validation import CallIdFactory, SchemaValidator

__all__ = ["ToolCallEngine"]

LOGGER = logging.getLogger(__name__)


class ToolCallEngine:
    """Streams text in, drives validated tool calls to terminal results.

    Constructing an engine freezes ``registry``.

    Args:
        registry: Tools available during this turn.
        settings: Engine settings; defaults are used when omitted.
        policy: Approval policy passed to the lifecycle manager.
        emitter: Event emitter; a private one is created when omitted.
        sleep: Backoff sleep used by dispatch; injectable for tests.
        clock: Timestamp source for calls and snapshots.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        *,
        settings: EngineSettings | None = None,
        policy: ApprovalPolicy | None = None,
        emitter: EventEmitter | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._settings = settings or EngineSettings()
        self._registry = registry
        registry.freeze()
        self._emitter = emitter or EventEmitter()
        self._scanner = TagScanner(max_block_chars=self._settings.max_block_chars)
        self._normalizer = ParameterNormalizer(registry.schema_for)
        id_factory = CallIdFactory()
        self._validator = SchemaValidator(
            registry.schema_for,
            known_tools=registry.list_names,
            id_factory=id_factory,
            clock=clock,
        )
        self._dispatch = ExecutorDispatch(registry, self._settings, sleep=sleep)
        self._lifecycle = CallLifecycleManager(
            self._dispatch,
            self._emitter,
            policy=policy,
            settings=self._settings,
            id_factory=id_factory,
            clock=clock,
        )
        self._pending: list[str] = []
        self._discarded: list[DraftUpdate] = []

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------
    @property
    def settings(self) -> EngineSettings:
        return self._settings

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    @property
    def emitter(self) -> EventEmitter:
        return self._emitter

    @property
    def lifecycle(self) -> CallLifecycleManager:
        return self._lifecycle

    @property
    def pending_call_ids(self) -> list[str]:
        """Calls accepted but not yet driven to a terminal state."""
        return [call_id for call_id in self._pending if not self._lifecycle.state(call_id).is_terminal]

    @property
    def discarded_drafts(self) -> list[DraftUpdate]:
        return list(self._discarded)

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        return self._emitter.subscribe(subscriber)

    def stream(self, maxsize: int = 0) -> EventStream:
        return self._emitter.stream(maxsize=maxsize)

    def snapshot(self, call_id: str) -> CallSnapshot:
        return self._lifecycle.snapshot(call_id)

    # ------------------------------------------------------------------
    # Streaming intake
    # ------------------------------------------------------------------
    def feed(self, chunk: str) -> list[DraftUpdate]:
        """Feed one chunk of model output; returns the scanner updates.

        Closed blocks are queued as calls (or recorded as validation
        failures) before this method returns.
        """
        updates = self._scanner.feed(chunk)
        self._consume(updates)
        return updates

    def finalize(self) -> list[DraftUpdate]:
        """Mark the end of the stream; an unterminated block is discarded."""
        updates = self._scanner.finalize()
        self._consume(updates)
        return updates

    def abort(self) -> list[DraftUpdate]:
        """Abort the stream and request cancellation of executing calls."""
        updates = self._scanner.abort()
        self._consume(updates)
        for call_id in self._lifecycle.active_call_ids():
            self._lifecycle.cancel(call_id)
        return updates

    def _consume(self, updates: list[DraftUpdate]) -> None:
        for update in updates:
            if update.status is DraftStatus.CLOSED:
                self._accept_draft(update.draft)
            elif update.status is DraftStatus.DISCARDED:
                LOGGER.info(
                    "Discarded <tool name=%r> block at offset %s (%s)",
                    update.draft.tool_name,
                    update.draft.offset,
                    update.reason,
                )
                self._discarded.append(update)

    def _accept_draft(self, draft: ToolInvocationDraft) -> str:
        params = self._normalizer.normalize(draft)
        return self._intake(draft.tool_name, params)

    # ------------------------------------------------------------------
    # Programmatic intake
    # ------------------------------------------------------------------
    def accept(self, tool_name: str, params: Mapping[str, Any]) -> str:
        """Queue a call from an already-parsed parameter mapping.

        Values may be raw strings (decoded as if streamed) or already typed
        lists, dicts and primitives. Returns the call id; a call that fails
        validation is recorded as failed immediately.
        """
        bag = self._normalizer.normalize_fields(tool_name, params)
        return self._intake(tool_name, bag)

    async def invoke(self, tool_name: str, params: Mapping[str, Any]) -> ExecutionResult:
        """Accept and run one call, returning its terminal result."""
        call_id = self.accept(tool_name, params)
        existing = self._lifecycle.result(call_id)
        if existing is not None:
            return existing
        return await self.run_call(call_id)

    def _intake(self, tool_name: str, params: Mapping[str, Any]) -> str:
        outcome = self._validator.validate(tool_name, params)
        if outcome.ok and outcome.call is not None:
            self._lifecycle.submit(outcome.call)
            self._pending.append(outcome.call.id)
            LOGGER.debug("Queued call %s to %s", outcome.call.id, tool_name)
            return outcome.call.id
        result = self._lifecycle.record_validation_failure(tool_name, params, outcome.issues)
        return result.call_id

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------
    async def run_call(self, call_id: str) -> ExecutionResult:
        try:
            return await self._lifecycle.execute(call_id)
        finally:
            if call_id in self._pending and self._lifecycle.state(call_id).is_terminal:
                self._pending.remove(call_id)

    async def drain(self, max_parallelism: int = 1) -> list[ExecutionResult]:
        """Run every pending call; sequential unless ``max_parallelism`` > 1."""
        call_ids = self.pending_call_ids
        if not call_ids:
            return []
        try:
            return await self._lifecycle.run_many(call_ids, max_parallelism=max_parallelism)
        finally:
            self._pending = [call_id for call_id in self._pending if not self._lifecycle.state(call_id).is_terminal]

    def approve(self, call_id: str) -> None:
        self._lifecycle.approve(call_id)

    def reject(self, call_id: str, feedback: str = "") -> None:
        self._lifecycle.reject(call_id, feedback)

    def cancel(self, call_id: str) -> bool:
        return self._lifecycle.cancel(call_id)
