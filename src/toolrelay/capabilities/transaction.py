"""Staged multi-file edits with commit/rollback.

File contents are read once into an in-memory snapshot, edited there, and
only written back by :meth:`EditTransaction.commit`. If any write fails,
files already written are restored from their snapshots.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum, auto
from pathlib import Path
from typing import Any

from .workspace import Workspace

__all__ = [
    "EditTransaction",
    "TransactionState",
    "StagedEdit",
    "TransactionError",
    "CommitError",
]

LOGGER = logging.getLogger(__name__)


class TransactionState(Enum):
    PENDING = auto()  # Not started
    ACTIVE = auto()  # Edits being staged
    COMMITTED = auto()  # Edits written
    ROLLED_BACK = auto()  # Edits discarded
    FAILED = auto()  # Error during commit


class TransactionError(Exception):
    """Base error for transaction operations."""

    def __init__(self, message: str, *, transaction_id: str | None = None) -> None:
        super().__init__(message)
        self.transaction_id = transaction_id


class CommitError(TransactionError):
    """Error while writing staged edits; written files were restored."""

    def __init__(self, message: str, *, transaction_id: str | None = None, path: Path | None = None) -> None:
        super().__init__(message, transaction_id=transaction_id)
        self.path = path


@dataclass(slots=True)
class StagedEdit:
    """Working copy of one file inside a transaction.

    Attributes:
        path: Absolute file path.
        original: Content when first read.
        content: Current staged content.
        edit_count: Number of successful edits applied to ``content``.
    """

    path: Path
    original: str
    content: str
    edit_count: int = 0

    @property
    def changed(self) -> bool:
        return self.content != self.original

    def size_change(self) -> int:
        return len(self.content) - len(self.original)


@dataclass
class EditTransaction:
    """Collects file edits and writes them all or none.

    Example:
        with EditTransaction(workspace) as tx:
            text = tx.read(path)
            tx.stage(path, text.replace("a", "b"))
            tx.commit()
    """

    workspace: Workspace
    transaction_id: str = field(default_factory=lambda: f"tx-{uuid.uuid4().hex[:12]}")
    state: TransactionState = TransactionState.PENDING
    edits: dict[Path, StagedEdit] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)

    # ------------------------------------------------------------------
    # Transaction Lifecycle
    # ------------------------------------------------------------------
    def begin(self) -> "EditTransaction":
        if self.state is not TransactionState.PENDING:
            raise TransactionError(f"Cannot begin: transaction is {self.state.name}", transaction_id=self.transaction_id)
        self.state = TransactionState.ACTIVE
        self.edits.clear()
        LOGGER.debug("Transaction %s started", self.transaction_id)
        return self

    def commit(self) -> list[Path]:
        """Write every changed file; returns the paths written.

        Raises:
            TransactionError: If the transaction is not active.
            CommitError: If a write fails (already written files are restored).
        """
        self._require_active("commit")
        pending = [edit for edit in self.edits.values() if edit.changed]
        written: list[StagedEdit] = []
        try:
            for edit in pending:
                self.workspace.write_text(edit.path, edit.content)
                written.append(edit)
        except (OSError, ValueError) as exc:
            LOGGER.error(
                "Transaction %s commit failed, restoring %d written file(s): %s",
                self.transaction_id,
                len(written),
                exc,
            )
            self._restore(written)
            self.state = TransactionState.FAILED
            failed = pending[len(written)].path if len(written) < len(pending) else None
            raise CommitError(f"Commit failed: {exc}", transaction_id=self.transaction_id, path=failed) from exc

        self.state = TransactionState.COMMITTED
        LOGGER.info("Transaction %s committed (%d file(s))", self.transaction_id, len(written))
        return [edit.path for edit in written]

    def rollback(self, reason: str | None = None) -> bool:
        """Discard staged edits; nothing on disk is touched."""
        if self.state not in (TransactionState.ACTIVE, TransactionState.FAILED):
            LOGGER.debug("Cannot rollback: transaction %s is %s", self.transaction_id, self.state.name)
            return False
        self.edits.clear()
        self.state = TransactionState.ROLLED_BACK
        LOGGER.info("Transaction %s rolled back: %s", self.transaction_id, reason or "no reason provided")
        return True

    def __enter__(self) -> "EditTransaction":
        if self.state is TransactionState.PENDING:
            self.begin()
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:  # noqa: D401
        if self.state is TransactionState.ACTIVE:
            self.rollback(str(exc) if exc is not None else "not committed")
        return False

    # ------------------------------------------------------------------
    # Staging
    # ------------------------------------------------------------------
    def read(self, path: Path) -> str:
        """Current staged content of ``path``, reading it on first use."""
        self._require_active("read")
        edit = self.edits.get(path)
        if edit is None:
            original = self.workspace.read_text(path)
            edit = StagedEdit(path=path, original=original, content=original)
            self.edits[path] = edit
        return edit.content

    def stage(self, path: Path, content: str) -> StagedEdit:
        self._require_active("stage")
        edit = self.edits.get(path)
        if edit is None:
            raise TransactionError(f"Read {path} before staging edits to it", transaction_id=self.transaction_id)
        edit.content = content
        edit.edit_count += 1
        LOGGER.debug("Staged edit %d for %s (%+d chars)", edit.edit_count, path, edit.size_change())
        return edit

    @property
    def changed_paths(self) -> list[Path]:
        return [edit.path for edit in self.edits.values() if edit.changed]

    def _require_active(self, action: str) -> None:
        if self.state is not TransactionState.ACTIVE:
            raise TransactionError(
                f"Cannot {action}: transaction is {self.state.name}",
                transaction_id=self.transaction_id,
            )

    def _restore(self, written: list[StagedEdit]) -> None:
        for edit in reversed(written):
            try:
                self.workspace.write_text(edit.path, edit.original)
            except (OSError, ValueError):
                LOGGER.error("Could not restore %s during rollback", edit.path, exc_info=True)
