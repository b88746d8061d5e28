"""End-to-end tests for :class:`toolrelay.engine.ToolCallEngine`."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import pytest

from toolrelay import ToolCallEngine
from toolrelay.errors import RegistryFrozenError
from toolrelay.events import CallEvent
from toolrelay.outcomes import ErrorKind
from toolrelay.parsing import DiscardReason
from toolrelay.registry import ToolRegistry
from toolrelay.schema import FieldShape, FieldSpec, ToolSchema
from toolrelay.settings import EngineSettings
from toolrelay.tools import register_builtin_tools
from toolrelay.types import CallState

TRANSCRIPT = (
    "Sure, echoing now.\n"
    '<tool name="echo"><text>hello</text><loud>true</loud></tool>\n'
    "and listing:\n"
    '<tool name="list_files"><paths><path>a.py</path><path>b.py</path></paths></tool>'
)


def _engine(registry: ToolRegistry, settings: EngineSettings, fake_sleep: Any) -> ToolCallEngine:
    return ToolCallEngine(registry, settings=settings, sleep=fake_sleep)


class TestStreamingIntake:
    @pytest.mark.asyncio
    async def test_feed_queues_and_drain_executes(
        self, registry: ToolRegistry, settings: EngineSettings, fake_sleep: Any
    ) -> None:
        engine = _engine(registry, settings, fake_sleep)
        engine.feed(TRANSCRIPT)
        engine.finalize()
        assert len(engine.pending_call_ids) == 2

        results = await engine.drain()
        assert [result.state for result in results] == [CallState.SUCCEEDED, CallState.SUCCEEDED]
        assert results[0].payload == {"text": "HELLO"}
        assert results[1].payload == {"paths": ["a.py", "b.py"]}
        assert engine.pending_call_ids == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("size", [1, 5, 13])
    async def test_chunked_feed_gives_the_same_results(
        self, registry: ToolRegistry, settings: EngineSettings, fake_sleep: Any, size: int
    ) -> None:
        engine = _engine(registry, settings, fake_sleep)
        for start in range(0, len(TRANSCRIPT), size):
            engine.feed(TRANSCRIPT[start : start + size])
        engine.finalize()
        results = await engine.drain()
        assert [result.payload for result in results] == [{"text": "HELLO"}, {"paths": ["a.py", "b.py"]}]

    @pytest.mark.asyncio
    async def test_events_follow_the_lifecycle(
        self, registry: ToolRegistry, settings: EngineSettings, fake_sleep: Any
    ) -> None:
        engine = _engine(registry, settings, fake_sleep)
        events: list[CallEvent] = []
        engine.subscribe(events.append)
        engine.feed('<tool name="echo"><text>x</text></tool>')
        await engine.drain()
        assert [event.state for event in events] == [
            CallState.QUEUED,
            CallState.AWAITING_APPROVAL,
            CallState.EXECUTING,
            CallState.SUCCEEDED,
        ]
        assert events[-1].snapshot.to_dict()["payload"] == {"text": "x"}

    @pytest.mark.asyncio
    async def test_empty_array_fails_validation_without_execution(self, settings: EngineSettings, fake_sleep: Any) -> None:
        calls: list[Any] = []
        registry = ToolRegistry()
        registry.register(
            ToolSchema(
                name="list_files",
                fields=(FieldSpec("paths", shape=FieldShape.ARRAY, min_items=1, item_tag="path"),),
            ),
            lambda params: calls.append(params),
        )
        engine = _engine(registry, settings, fake_sleep)
        events: list[CallEvent] = []
        engine.subscribe(events.append)
        engine.feed('<tool name="list_files"><paths></paths></tool>')

        assert engine.pending_call_ids == []
        assert [event.state for event in events] == [CallState.QUEUED, CallState.FAILED]
        error = events[-1].snapshot.to_dict()["error"]
        assert error["kind"] == "validation"
        assert "paths" in error["message"]
        assert await engine.drain() == []
        assert calls == []

    def test_unterminated_block_is_discarded(
        self, registry: ToolRegistry, settings: EngineSettings, fake_sleep: Any
    ) -> None:
        engine = _engine(registry, settings, fake_sleep)
        engine.feed('<tool name="echo"><text>never closed')
        engine.finalize()
        assert engine.pending_call_ids == []
        assert [update.reason for update in engine.discarded_drafts] == [DiscardReason.UNTERMINATED]

    def test_registry_is_frozen(self, registry: ToolRegistry, settings: EngineSettings, fake_sleep: Any) -> None:
        _engine(registry, settings, fake_sleep)
        with pytest.raises(RegistryFrozenError):
            registry.register(ToolSchema(name="late", fields=()), lambda params: None)


class TestProgrammaticIntake:
    @pytest.mark.asyncio
    async def test_invoke_with_typed_params(
        self, registry: ToolRegistry, settings: EngineSettings, fake_sleep: Any
    ) -> None:
        engine = _engine(registry, settings, fake_sleep)
        result = await engine.invoke("list_files", {"paths": ["x"], "recursive": "false"})
        assert result.state is CallState.SUCCEEDED
        assert engine.snapshot(result.call_id).params == {"paths": ["x"], "recursive": False}

    @pytest.mark.asyncio
    async def test_invoke_returns_validation_failure(
        self, registry: ToolRegistry, settings: EngineSettings, fake_sleep: Any
    ) -> None:
        engine = _engine(registry, settings, fake_sleep)
        result = await engine.invoke("echo", {})
        assert result.state is CallState.FAILED
        assert result.error is not None
        assert result.error.kind is ErrorKind.VALIDATION
        assert result.attempts == 0

    @pytest.mark.asyncio
    async def test_unknown_tool_fails_validation(
        self, registry: ToolRegistry, settings: EngineSettings, fake_sleep: Any
    ) -> None:
        engine = _engine(registry, settings, fake_sleep)
        result = await engine.invoke("nope", {"a": "1"})
        assert result.state is CallState.FAILED
        assert result.error is not None
        assert "nope" in result.error.message


class TestExecution:
    @pytest.mark.asyncio
    async def test_handler_exception_becomes_failed_snapshot(self, settings: EngineSettings, fake_sleep: Any) -> None:
        def broken(params: Any) -> None:
            raise RuntimeError("disk on fire")

        registry = ToolRegistry()
        registry.register(ToolSchema(name="echo", fields=(FieldSpec("text"),)), broken)
        engine = _engine(registry, settings, fake_sleep)
        result = await engine.invoke("echo", {"text": "hi"})

        assert result.state is CallState.FAILED
        data = engine.snapshot(result.call_id).to_dict()
        assert data["state"] == "failed"
        assert "disk on fire" in data["error"]["message"]
        assert data["payload"] is None
        snapshot = engine.snapshot(result.call_id)
        assert snapshot.error is not None
        assert snapshot.error is snapshot.result.error  # type: ignore[union-attr]
        assert snapshot.error.kind is ErrorKind.UNKNOWN
        assert fake_sleep.delays == []

    @pytest.mark.asyncio
    async def test_manual_approval(self, registry: ToolRegistry, fake_sleep: Any) -> None:
        engine = _engine(registry, EngineSettings(), fake_sleep)
        awaiting = asyncio.Event()
        engine.subscribe(lambda event: awaiting.set() if event.state is CallState.AWAITING_APPROVAL else None)

        first = engine.accept("echo", {"text": "one"})
        second = engine.accept("echo", {"text": "two"})

        task = asyncio.create_task(engine.run_call(first))
        await asyncio.wait_for(awaiting.wait(), timeout=1)
        engine.approve(first)
        result = await asyncio.wait_for(task, timeout=1)
        assert result.payload == {"text": "one"}

        awaiting.clear()
        task = asyncio.create_task(engine.run_call(second))
        await asyncio.wait_for(awaiting.wait(), timeout=1)
        engine.reject(second, "not now")
        result = await asyncio.wait_for(task, timeout=1)
        assert result.state is CallState.REJECTED
        assert result.feedback == "not now"
        assert engine.pending_call_ids == []

    @pytest.mark.asyncio
    async def test_builtin_multi_replace_partial_success(
        self, workspace_root: Path, settings: EngineSettings, fake_sleep: Any
    ) -> None:
        (workspace_root / "a.py").write_text("alpha beta\n", encoding="utf-8")
        registry = ToolRegistry()
        fetcher = register_builtin_tools(registry, workspace_root, settings=settings)
        engine = _engine(registry, settings, fake_sleep)
        engine.feed(
            '<tool name="multi_replace_string_in_file"><replacements>'
            "<replacement><filePath>a.py</filePath><oldString>alpha</oldString><newString>ALPHA</newString></replacement>"
            "<replacement><filePath>a.py</filePath><oldString>zeta</oldString><newString>Z</newString></replacement>"
            "</replacements></tool>"
        )
        try:
            (result,) = await engine.drain()
        finally:
            await fetcher.aclose()

        assert result.state is CallState.PARTIALLY_SUCCEEDED
        assert result.partial is not None
        assert (result.partial.success_count, result.partial.failure_count) == (1, 1)
        assert result.partial.per_item_errors[0].index == 1
        assert (workspace_root / "a.py").read_text(encoding="utf-8") == "ALPHA beta\n"

    @pytest.mark.asyncio
    async def test_surrogate_reference_is_written_literally(
        self, workspace_root: Path, settings: EngineSettings, fake_sleep: Any
    ) -> None:
        (workspace_root / "a.txt").write_text("alpha\n", encoding="utf-8")
        (workspace_root / "b.txt").write_text("beta\n", encoding="utf-8")
        registry = ToolRegistry()
        fetcher = register_builtin_tools(registry, workspace_root, settings=settings)
        engine = _engine(registry, settings, fake_sleep)
        engine.feed(
            '<tool name="multi_replace_string_in_file"><replacements>'
            "<replacement><filePath>a.txt</filePath><oldString>alpha</oldString><newString>ALPHA</newString></replacement>"
            "<replacement><filePath>b.txt</filePath><oldString>beta</oldString><newString>&#xD800;</newString></replacement>"
            "</replacements></tool>"
        )
        try:
            (result,) = await engine.drain()
        finally:
            await fetcher.aclose()

        assert result.state is CallState.SUCCEEDED
        assert (workspace_root / "a.txt").read_text(encoding="utf-8") == "ALPHA\n"
        assert (workspace_root / "b.txt").read_text(encoding="utf-8") == "&#xD800;\n"
