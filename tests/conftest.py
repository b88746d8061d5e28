"""Shared pytest fixtures."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from toolrelay.registry import ToolRegistry
from toolrelay.schema import FieldShape, FieldSpec, ToolSchema
from toolrelay.settings import EngineSettings

ECHO_SCHEMA = ToolSchema(
    name="echo",
    description="Echo the text back.",
    fields=(
        FieldSpec("text"),
        FieldSpec("loud", shape=FieldShape.BOOLEAN, required=False),
        FieldSpec("count", shape=FieldShape.NUMBER, required=False),
    ),
)

LIST_SCHEMA = ToolSchema(
    name="list_files",
    fields=(
        FieldSpec("paths", shape=FieldShape.ARRAY, min_items=1, item_tag="path"),
        FieldSpec("recursive", shape=FieldShape.BOOLEAN, required=False),
    ),
)


class RecordingSleep:
    """Stand-in for ``asyncio.sleep`` that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings(auto_approve=True, retry_base_delay=0.1, retry_max_delay=1.0)


@pytest.fixture
def fake_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def registry() -> ToolRegistry:
    reg = ToolRegistry()

    def echo(params: dict[str, Any]) -> dict[str, Any]:
        text = params["text"]
        return {"text": text.upper() if params.get("loud") else text}

    reg.register(ECHO_SCHEMA, echo)
    reg.register(LIST_SCHEMA, lambda params: {"paths": list(params["paths"])})
    return reg


@pytest.fixture
def workspace_root(tmp_path: Path) -> Path:
    root = tmp_path / "workspace"
    root.mkdir()
    return root
