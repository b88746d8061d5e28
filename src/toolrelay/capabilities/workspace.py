"""Workspace sandbox for filesystem capabilities."""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path

from ..errors import ExecutionError
from ..outcomes import ErrorKind

__all__ = ["Workspace", "MAX_FILE_BYTES"]

LOGGER = logging.getLogger(__name__)

MAX_FILE_BYTES = 10 * 1024 * 1024


class Workspace:
    """Resolves tool-supplied paths inside a fixed root directory.

    Relative paths are taken relative to the root. Any path that resolves
    outside the root, including through symlinks or ``..`` segments, is a
    ``permission`` failure.
    """

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).expanduser().resolve()

    def resolve(self, path: str) -> Path:
        cleaned = path.strip().replace("\\", "/")
        if not cleaned:
            raise ExecutionError(
                message="Empty file path",
                kind=ErrorKind.VALIDATION.value,
                suggestion="provide a path relative to the workspace root",
            )
        candidate = Path(cleaned)
        if not candidate.is_absolute():
            candidate = self.root / candidate
        resolved = candidate.resolve()
        if resolved != self.root and self.root not in resolved.parents:
            raise ExecutionError(
                message=f"Path '{path}' is outside the workspace",
                kind=ErrorKind.PERMISSION.value,
                details={"path": path, "root": str(self.root)},
                suggestion="use a path inside the workspace root",
            )
        return resolved

    def display(self, path: Path) -> str:
        try:
            return path.relative_to(self.root).as_posix()
        except ValueError:
            return str(path)

    def read_text(self, path: Path) -> str:
        """Read a workspace file, mapping OS failures to classified errors."""
        if not path.exists():
            raise ExecutionError(
                message=f"File not found: {self.display(path)}",
                kind=ErrorKind.NOT_FOUND.value,
                suggestion="check the path; the file must exist before it can be edited",
            )
        if not path.is_file():
            raise ExecutionError(
                message=f"Path exists but is not a file: {self.display(path)}",
                kind=ErrorKind.VALIDATION.value,
            )
        size = path.stat().st_size
        if size > MAX_FILE_BYTES:
            raise ExecutionError(
                message=f"File too large ({size} bytes); the maximum is {MAX_FILE_BYTES} bytes",
                kind=ErrorKind.VALIDATION.value,
            )
        try:
            with path.open("r", encoding="utf-8", newline="") as handle:
                return handle.read()
        except UnicodeDecodeError as exc:
            raise ExecutionError(
                message=f"File is not UTF-8 text: {self.display(path)}",
                kind=ErrorKind.VALIDATION.value,
                details={"path": self.display(path), "position": exc.start},
                suggestion="only UTF-8 text files can be edited",
            ) from exc
        except PermissionError as exc:
            raise ExecutionError(
                message=f"Permission denied reading {self.display(path)}",
                kind=ErrorKind.PERMISSION.value,
                details={"path": self.display(path)},
                suggestion="check that the file is readable",
            ) from exc

    def write_text(self, path: Path, content: str) -> None:
        """Write ``content`` via a temporary file and an atomic rename."""
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8", newline="") as handle:
                handle.write(content)
            os.replace(tmp_name, path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except OSError:
                LOGGER.debug("Could not remove temporary file %s", tmp_name, exc_info=True)
            raise
