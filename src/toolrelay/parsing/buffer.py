"""Append-only text buffer with a consumed cursor."""

from __future__ import annotations

__all__ = ["StreamBuffer"]


class StreamBuffer:
    """Accumulates streamed chunks and tracks how much has been consumed.

    Offsets exposed by the buffer are absolute stream positions, so they stay
    valid after :meth:`compact` drops consumed text.
    """

    def __init__(self) -> None:
        self._text = ""
        self._base = 0
        self._cursor = 0

    def append(self, chunk: str) -> None:
        if chunk:
            self._text += chunk

    @property
    def text(self) -> str:
        """Retained text; index ``i`` is absolute offset ``base + i``."""
        return self._text

    @property
    def base(self) -> int:
        return self._base

    @property
    def cursor(self) -> int:
        """Absolute offset of the first unconsumed character."""
        return self._base + self._cursor

    @property
    def end(self) -> int:
        """Absolute offset one past the last received character."""
        return self._base + len(self._text)

    @property
    def pending(self) -> str:
        return self._text[self._cursor :]

    def local(self, offset: int) -> int:
        """Translate an absolute offset into an index into :attr:`text`."""
        return offset - self._base

    def advance_to(self, offset: int) -> None:
        index = self.local(offset)
        if index < self._cursor or index > len(self._text):
            raise ValueError(f"Cannot move cursor to {offset} (cursor={self.cursor}, end={self.end})")
        self._cursor = index

    def compact(self) -> None:
        """Drop consumed text while keeping absolute offsets stable."""
        if self._cursor:
            self._text = self._text[self._cursor :]
            self._base += self._cursor
            self._cursor = 0

    def clear(self) -> None:
        self._base = self.end
        self._text = ""
        self._cursor = 0

    def __len__(self) -> int:
        return len(self._text) - self._cursor
