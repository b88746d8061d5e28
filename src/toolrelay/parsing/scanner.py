"""Incremental recognizer for ``<tool name="...">`` invocation blocks.

The scanner only splits a block into its tool name and the verbatim raw
text of each top-level field. Anything nested inside a field, including
repeating ``<item>`` elements or even another ``<tool>`` tag, is captured
as part of that field's raw text and left to the normalizer.

Example::

    scanner = TagScanner()
    for chunk in stream:
        for update in scanner.feed(chunk):
            if update.status is DraftStatus.CLOSED:
                handle(update.draft)
    scanner.finalize()
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum

from .buffer import StreamBuffer

__all__ = [
    "DraftStatus",
    "DraftUpdate",
    "ToolInvocationDraft",
    "TagScanner",
    "DiscardReason",
]

LOGGER = logging.getLogger(__name__)

_NAME_ATTR_RE = re.compile(r"""\bname\s*=\s*(["'])(.*?)\1""", re.DOTALL)
_ELEMENT_RE = re.compile(r"<(/?)([A-Za-z_][\w.\-:]*)(\s[^<>]*?)?(/?)>")
# A trailing '<' with no '>' after it is held back as a possibly partial tag
# unless the tail is longer than any plausible tag.
_MAX_TAG_CHARS = 512


class DraftStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"
    DISCARDED = "discarded"


class DiscardReason:
    """Reasons attached to ``discarded`` updates."""

    UNTERMINATED = "unterminated"
    ABORTED = "aborted"
    INTERRUPTED = "interrupted"
    BLOCK_TOO_LARGE = "block_too_large"


@dataclass(slots=True)
class ToolInvocationDraft:
    """Mutable accumulator for one tool block.

    Attributes:
        tool_name: Value of the block's ``name`` attribute.
        raw_fields: Field name to verbatim inner text, in arrival order.
        complete: True once the closing tag has been seen.
        offset: Absolute stream offset of the opening tag.
        streaming_field: Field currently being received, if any.
        streaming_text: Text received so far for ``streaming_field``.
    """

    tool_name: str
    raw_fields: dict[str, str] = field(default_factory=dict)
    complete: bool = False
    offset: int = 0
    streaming_field: str | None = None
    streaming_text: str = ""

    def snapshot(self) -> "ToolInvocationDraft":
        return ToolInvocationDraft(
            tool_name=self.tool_name,
            raw_fields=dict(self.raw_fields),
            complete=self.complete,
            offset=self.offset,
            streaming_field=self.streaming_field,
            streaming_text=self.streaming_text,
        )


@dataclass(slots=True, frozen=True)
class DraftUpdate:
    """One scanner event; ``draft`` is a snapshot, safe to keep."""

    status: DraftStatus
    draft: ToolInvocationDraft
    reason: str = ""

    @property
    def is_closed(self) -> bool:
        return self.status is DraftStatus.CLOSED


class _Phase(Enum):
    OUTSIDE = "outside"
    BETWEEN_FIELDS = "between_fields"
    IN_FIELD = "in_field"


def _holdback(text: str, start: int) -> int:
    """Index from which scanning must resume once more text arrives."""
    lt = text.rfind("<", start)
    if lt < 0 or ">" in text[lt:] or len(text) - lt > _MAX_TAG_CHARS:
        return len(text)
    return lt


class TagScanner:
    """Accumulator turning streamed text into :class:`DraftUpdate` events.

    ``feed`` is the only way text enters the scanner. A block is reported as
    ``closed`` exactly once, when its closing tag arrives; chunk boundaries
    never change the closed draft. Blocks still open when the stream ends
    are reported as ``discarded`` by :meth:`finalize` or :meth:`abort`.
    """

    def __init__(self, *, max_block_chars: int = 262_144, tag: str = "tool") -> None:
        self._max_block_chars = max_block_chars
        self._tag = tag
        self._open_re = re.compile(rf"<{re.escape(tag)}(?=[\s/>])([^<>]*?)(/?)>")
        self._buffer = StreamBuffer()
        self._phase = _Phase.OUTSIDE
        self._draft: ToolInvocationDraft | None = None
        self._field_name = ""
        self._field_re: re.Pattern[str] | None = None
        self._field_start = 0
        self._field_scan = 0
        self._depth = 0
        self._dirty = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    @property
    def buffer(self) -> StreamBuffer:
        return self._buffer

    @property
    def has_open_draft(self) -> bool:
        return self._draft is not None

    def feed(self, chunk: str) -> list[DraftUpdate]:
        """Consume ``chunk`` and return the updates it produced."""
        self._buffer.append(chunk)
        updates: list[DraftUpdate] = []
        while self._step(updates):
            pass
        draft = self._draft
        if draft is not None:
            if self._buffer.end - draft.offset > self._max_block_chars:
                self._discard(updates, DiscardReason.BLOCK_TOO_LARGE)
                self._buffer.advance_to(self._buffer.end)
            elif self._dirty:
                self._refresh_streaming()
                updates.append(DraftUpdate(DraftStatus.OPEN, draft.snapshot()))
                self._dirty = False
        if self._phase is _Phase.OUTSIDE:
            self._buffer.compact()
        return updates

    def finalize(self) -> list[DraftUpdate]:
        """End of stream: discard any open draft and reset."""
        return self._close_stream(DiscardReason.UNTERMINATED)

    def abort(self) -> list[DraftUpdate]:
        """Stream aborted: discard any open draft and reset."""
        return self._close_stream(DiscardReason.ABORTED)

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------
    def _step(self, updates: list[DraftUpdate]) -> bool:
        if self._phase is _Phase.OUTSIDE:
            return self._scan_outside(updates)
        if self._phase is _Phase.BETWEEN_FIELDS:
            return self._scan_between(updates)
        return self._scan_field()

    def _scan_outside(self, updates: list[DraftUpdate]) -> bool:
        buf = self._buffer
        text = buf.text
        start = buf.local(buf.cursor)
        match = self._open_re.search(text, start)
        if match is None:
            buf.advance_to(buf.base + _holdback(text, start))
            return False
        buf.advance_to(buf.base + match.end())
        name_match = _NAME_ATTR_RE.search(match.group(1))
        name = name_match.group(2).strip() if name_match else ""
        if not name:
            LOGGER.warning("Ignoring <%s> tag without a name at offset %s", self._tag, buf.base + match.start())
            return True
        draft = ToolInvocationDraft(tool_name=name, offset=buf.base + match.start())
        if match.group(2):
            draft.complete = True
            updates.append(DraftUpdate(DraftStatus.CLOSED, draft.snapshot()))
            return True
        LOGGER.debug("Opened %s block at offset %s", name, draft.offset)
        self._draft = draft
        self._phase = _Phase.BETWEEN_FIELDS
        self._dirty = True
        return True

    def _scan_between(self, updates: list[DraftUpdate]) -> bool:
        buf = self._buffer
        text = buf.text
        draft = self._draft
        assert draft is not None
        lt = text.find("<", buf.local(buf.cursor))
        if lt < 0:
            buf.advance_to(buf.end)
            return False
        match = _ELEMENT_RE.match(text, lt)
        if match is None:
            hold = _holdback(text, lt)
            if hold == lt:
                buf.advance_to(buf.base + lt)
                return False
            # A stray '<' between fields is plain text.
            buf.advance_to(buf.base + lt + 1)
            return True

        closing, name, _attrs, self_closing = match.groups()
        end = buf.base + match.end()
        if name == self._tag:
            if closing:
                if end - draft.offset > self._max_block_chars:
                    buf.advance_to(end)
                    self._discard(updates, DiscardReason.BLOCK_TOO_LARGE)
                    return True
                buf.advance_to(end)
                draft.complete = True
                draft.streaming_field = None
                draft.streaming_text = ""
                updates.append(DraftUpdate(DraftStatus.CLOSED, draft.snapshot()))
                LOGGER.debug("Closed %s block with fields %s", draft.tool_name, list(draft.raw_fields))
                self._reset_block()
                return True
            # A new opening tag before the current block closed.
            buf.advance_to(buf.base + lt)
            self._discard(updates, DiscardReason.INTERRUPTED)
            return True

        buf.advance_to(end)
        if closing:
            LOGGER.debug("Skipping stray </%s> in %s block", name, draft.tool_name)
            return True
        if self_closing:
            self._store_field(name, "")
            return True
        self._field_name = name
        self._field_re = re.compile(rf"<(/?){re.escape(name)}(\s[^<>]*?)?(/?)>")
        self._field_start = end
        self._field_scan = end
        self._depth = 1
        self._phase = _Phase.IN_FIELD
        self._dirty = True
        return True

    def _scan_field(self) -> bool:
        buf = self._buffer
        text = buf.text
        pattern = self._field_re
        assert pattern is not None
        pos = buf.local(self._field_scan)
        while True:
            match = pattern.search(text, pos)
            if match is None:
                break
            pos = match.end()
            if match.group(1):
                self._depth -= 1
            elif not match.group(3):
                self._depth += 1
            if self._depth == 0:
                raw = text[buf.local(self._field_start) : match.start()]
                buf.advance_to(buf.base + pos)
                self._store_field(self._field_name, raw)
                self._phase = _Phase.BETWEEN_FIELDS
                return True
        self._field_scan = buf.base + _holdback(text, pos)
        self._dirty = True
        return False

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _store_field(self, name: str, raw: str) -> None:
        draft = self._draft
        assert draft is not None
        if name in draft.raw_fields:
            LOGGER.warning("Duplicate field %s in %s block; keeping the last value", name, draft.tool_name)
            del draft.raw_fields[name]
        draft.raw_fields[name] = raw
        draft.streaming_field = None
        draft.streaming_text = ""
        self._field_re = None
        self._dirty = True

    def _refresh_streaming(self) -> None:
        draft = self._draft
        assert draft is not None
        if self._phase is _Phase.IN_FIELD:
            text = self._buffer.text
            draft.streaming_field = self._field_name
            draft.streaming_text = text[self._buffer.local(self._field_start) : self._buffer.local(self._field_scan)]
        else:
            draft.streaming_field = None
            draft.streaming_text = ""

    def _discard(self, updates: list[DraftUpdate], reason: str) -> None:
        draft = self._draft
        if draft is None:
            return
        LOGGER.warning("Discarding %s block at offset %s: %s", draft.tool_name, draft.offset, reason)
        updates.append(DraftUpdate(DraftStatus.DISCARDED, draft.snapshot(), reason))
        self._reset_block()

    def _reset_block(self) -> None:
        self._draft = None
        self._phase = _Phase.OUTSIDE
        self._field_name = ""
        self._field_re = None
        self._depth = 0
        self._dirty = False

    def _close_stream(self, reason: str) -> list[DraftUpdate]:
        updates: list[DraftUpdate] = []
        self._discard(updates, reason)
        self._buffer.clear()
        return updates
