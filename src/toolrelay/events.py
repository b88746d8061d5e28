"""Publishing call snapshots to subscribers.

Subscribers are plain callables receiving a :class:`CallEvent`. A failing
subscriber is logged and skipped; it never affects the engine or the other
subscribers. Async consumers use :meth:`EventEmitter.stream`.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Mapping

from .types import CallSnapshot, CallState

__all__ = [
    "CallEvent",
    "EventEmitter",
    "EventStream",
    "JsonlEventSink",
    "Subscriber",
]

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class CallEvent:
    """One state change of one call.

    Attributes:
        call_id: Identifier of the call.
        tool_name: Tool the call targets.
        state: State entered.
        snapshot: Complete view of the call in ``state``.
        sequence: Emitter-wide, strictly increasing event number.
    """

    call_id: str
    tool_name: str
    state: CallState
    snapshot: CallSnapshot
    sequence: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "sequence": self.sequence,
            "call_id": self.call_id,
            "tool_name": self.tool_name,
            "state": self.state.value,
            "snapshot": self.snapshot.to_dict(),
        }


Subscriber = Callable[[CallEvent], Any]


class EventStream:
    """Async iterator over events, fed by an :class:`EventEmitter`."""

    _CLOSED = object()

    def __init__(self, emitter: "EventEmitter", maxsize: int = 0) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self._unsubscribe = emitter.subscribe(self._push)

    def _push(self, event: CallEvent) -> None:
        if not self._closed:
            self._queue.put_nowait(event)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._unsubscribe()
        self._queue.put_nowait(self._CLOSED)

    async def get(self) -> CallEvent:
        item = await self._queue.get()
        if item is self._CLOSED:
            # Keep later callers terminating too.
            self._queue.put_nowait(self._CLOSED)
            raise StopAsyncIteration
        return item

    def __aiter__(self) -> "EventStream":
        return self

    async def __anext__(self) -> CallEvent:
        return await self.get()

    async def __aenter__(self) -> "EventStream":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:  # noqa: D401
        self.close()
        return False


class EventEmitter:
    """Fan-out of :class:`CallEvent` objects in causal order."""

    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []
        self._sequence = 0

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        """Register ``subscriber``; returns a callable that unsubscribes it."""
        self._subscribers.append(subscriber)

        def unsubscribe() -> None:
            try:
                self._subscribers.remove(subscriber)
            except ValueError:
                pass

        return unsubscribe

    def stream(self, maxsize: int = 0) -> EventStream:
        return EventStream(self, maxsize=maxsize)

    def emit(self, snapshot: CallSnapshot) -> CallEvent:
        self._sequence += 1
        event = CallEvent(
            call_id=snapshot.call_id,
            tool_name=snapshot.tool_name,
            state=snapshot.state,
            snapshot=snapshot,
            sequence=self._sequence,
        )
        for subscriber in list(self._subscribers):
            try:
                subscriber(event)
            except Exception:  # pragma: no cover - subscriber failures are isolated
                LOGGER.debug("Event subscriber failed for %s", snapshot.call_id, exc_info=True)
        return event


# -----------------------------------------------------------------------------
# JSONL sink
# -----------------------------------------------------------------------------


def _safe_json(value: Any, *, depth: int = 0) -> Any:
    if depth > 6:
        return repr(value)
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Mapping):
        return {str(key): _safe_json(val, depth=depth + 1) for key, val in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_safe_json(item, depth=depth + 1) for item in value]
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return repr(value)


class JsonlEventSink:
    """Subscriber writing one JSON object per event to a file.

    Example:
        with JsonlEventSink(path) as sink:
            unsubscribe = emitter.subscribe(sink)
            ...
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._file = self.path.open("a", encoding="utf-8")
        self._closed = False

    def __call__(self, event: CallEvent) -> None:
        if self._closed:
            return
        entry = {"event": "call", "timestamp": time.time(), **event.to_dict()}
        json.dump(_safe_json(entry), self._file, ensure_ascii=False)
        self._file.write("\n")
        self._file.flush()

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._file.close()

    def __enter__(self) -> "JsonlEventSink":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:  # noqa: D401
        self.close()
        return False
