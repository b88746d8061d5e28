"""String replacement capabilities.

``replace_string_in_file`` replaces every exact occurrence of one string in
one file. ``multi_replace_string_in_file`` applies a batch of independent
replacements across files: successful replacements are committed together,
failed ones are reported per item, and nothing is written when every
replacement fails.
"""

from __future__ import annotations

import difflib
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Sequence

from ..errors import ExecutionError
from ..handlers import ExecutionContext
from ..outcomes import ErrorInfo, ErrorKind, FailureOutcome, ItemError, Outcome, PartialOutcome, SuccessOutcome
from .transaction import CommitError, EditTransaction
from .workspace import Workspace

__all__ = [
    "Occurrence",
    "find_occurrences",
    "apply_replacement",
    "ReplaceStringHandler",
    "MultiReplaceStringHandler",
]

LOGGER = logging.getLogger(__name__)

_GROUP_REF_RE = re.compile(r"\$(\d+)")
_PREVIEW_CHARS = 50
_MAX_LOCATIONS = 3


@dataclass(slots=True, frozen=True)
class Occurrence:
    start: int
    end: int
    line: int
    column: int

    @property
    def label(self) -> str:
        return f"line {self.line}:{self.column}"


def _compile(old: str, *, case_insensitive: bool, use_regex: bool) -> re.Pattern[str]:
    flags = re.IGNORECASE if case_insensitive else 0
    return re.compile(old if use_regex else re.escape(old), flags)


def _position(text: str, offset: int) -> tuple[int, int]:
    line = text.count("\n", 0, offset) + 1
    column = offset - (text.rfind("\n", 0, offset) + 1) + 1
    return line, column


def find_occurrences(text: str, old: str, *, case_insensitive: bool = False, use_regex: bool = False) -> list[Occurrence]:
    """Locate non-overlapping matches of ``old`` with 1-based line/column."""
    pattern = _compile(old, case_insensitive=case_insensitive, use_regex=use_regex)
    found: list[Occurrence] = []
    for match in pattern.finditer(text):
        if match.start() == match.end():
            continue
        line, column = _position(text, match.start())
        found.append(Occurrence(match.start(), match.end(), line, column))
    return found


def apply_replacement(
    text: str,
    old: str,
    new: str,
    *,
    case_insensitive: bool = False,
    use_regex: bool = False,
) -> str:
    """Replace every match of ``old``; in regex mode ``$1`` refers to group 1."""
    pattern = _compile(old, case_insensitive=case_insensitive, use_regex=use_regex)
    if not use_regex:
        return pattern.sub(lambda _match: new, text)

    def expand(match: re.Match[str]) -> str:
        def group(ref: re.Match[str]) -> str:
            index = int(ref.group(1))
            if index > (pattern.groups or 0):
                return ref.group(0)
            return match.group(index) or ""

        return _GROUP_REF_RE.sub(group, new)

    return pattern.sub(lambda match: expand(match) if match.start() != match.end() else match.group(0), text)


def _preview(value: str) -> str:
    text = value if len(value) <= _PREVIEW_CHARS else value[:_PREVIEW_CHARS] + "..."
    return text.replace("\n", "\\n").replace("\t", "\\t")


def _locations(occurrences: Sequence[Occurrence]) -> str:
    labels = ", ".join(occ.label for occ in occurrences[:_MAX_LOCATIONS])
    extra = len(occurrences) - _MAX_LOCATIONS
    return f"{labels} and {extra} more" if extra > 0 else labels


def _closest_line_hint(text: str, old: str) -> str:
    first = old.strip().splitlines()[0] if old.strip() else ""
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    matches = difflib.get_close_matches(first, lines, n=1, cutoff=0.6) if first else []
    base = "make sure oldString matches the file exactly, including whitespace and indentation"
    if matches:
        return f"{base}; a similar line exists: {_preview(matches[0])!r}"
    return base


def _failure_from(exc: ExecutionError) -> FailureOutcome:
    return FailureOutcome(
        ErrorInfo(
            kind=ErrorKind.parse(exc.kind),
            message=exc.message,
            hint=exc.suggestion,
            transient=exc.transient,
            details=dict(exc.details),
        )
    )


def _commit_failure(exc: CommitError, message: str) -> FailureOutcome:
    if isinstance(exc.__cause__, ValueError):
        return FailureOutcome.of(
            ErrorKind.VALIDATION,
            message,
            hint="the new text cannot be written as UTF-8; remove invalid characters",
        )
    return FailureOutcome.of(ErrorKind.PERMISSION, message, hint="check that the files are writable")


# -----------------------------------------------------------------------------
# replace_string_in_file
# -----------------------------------------------------------------------------


class ReplaceStringHandler:
    """Replace all exact occurrences of ``oldString`` in one file."""

    timeout: float | None = None
    transient_kinds: frozenset[ErrorKind] = frozenset()

    def __init__(self, workspace: Workspace) -> None:
        self.workspace = workspace

    async def execute(self, params: Mapping[str, Any], context: ExecutionContext) -> Outcome:
        file_path = params["filePath"]
        old = params["oldString"]
        new = params["newString"]
        if old == "":
            return FailureOutcome.of(ErrorKind.VALIDATION, "oldString must not be empty", hint="copy the exact text to replace")
        if old == new:
            return FailureOutcome.of(
                ErrorKind.VALIDATION,
                "oldString and newString are identical; nothing would change",
                hint="send the edited text in newString",
            )
        try:
            path = self.workspace.resolve(file_path)
            with EditTransaction(self.workspace) as tx:
                text = tx.read(path)
                occurrences = find_occurrences(text, old)
                if not occurrences:
                    return FailureOutcome.of(
                        ErrorKind.NOT_FOUND,
                        f"String not found in {self.workspace.display(path)}: \"{_preview(old)}\"",
                        hint=_closest_line_hint(text, old),
                        path=self.workspace.display(path),
                    )
                context.checkpoint()
                tx.stage(path, text.replace(old, new))
                tx.commit()
        except ExecutionError as exc:
            return _failure_from(exc)
        except CommitError as exc:
            return _commit_failure(exc, str(exc))

        display = self.workspace.display(path)
        LOGGER.info("Replaced %d occurrence(s) in %s", len(occurrences), display)
        return SuccessOutcome(
            {
                "path": display,
                "occurrences": len(occurrences),
                "locations": [occ.label for occ in occurrences],
            }
        )


# -----------------------------------------------------------------------------
# multi_replace_string_in_file
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class _Replacement:
    index: int
    file_path: str
    old: str
    new: str
    case_insensitive: bool
    use_regex: bool
    order: float

    @classmethod
    def from_params(cls, index: int, item: Mapping[str, Any]) -> "_Replacement":
        order = item.get("order", 0)
        return cls(
            index=index,
            file_path=str(item.get("filePath", "")).strip(),
            old=item.get("oldString", ""),
            new=item.get("newString", ""),
            case_insensitive=item.get("caseInsensitive") is True,
            use_regex=item.get("useRegex") is True,
            order=order if isinstance(order, (int, float)) and not isinstance(order, bool) else 0,
        )

    @property
    def mode(self) -> str:
        if self.use_regex:
            return " (regex)"
        if self.case_insensitive:
            return " (case-insensitive)"
        return ""


class MultiReplaceStringHandler:
    """Apply a batch of replacements across files with partial-failure semantics.

    Replacements run in ascending ``order`` (ties keep request order) and
    each one sees the result of earlier replacements in the same file.
    """

    timeout: float | None = None
    transient_kinds: frozenset[ErrorKind] = frozenset()

    def __init__(self, workspace: Workspace) -> None:
        self.workspace = workspace

    async def execute(self, params: Mapping[str, Any], context: ExecutionContext) -> Outcome:
        items = [_Replacement.from_params(i, item) for i, item in enumerate(params["replacements"])]
        ordered = sorted(items, key=lambda item: item.order)
        groups: dict[str, list[_Replacement]] = {}
        for item in ordered:
            groups.setdefault(item.file_path, []).append(item)

        errors: list[ItemError] = []
        applied: list[dict[str, Any]] = []
        with EditTransaction(self.workspace) as tx:
            for file_path, group in groups.items():
                context.checkpoint()
                try:
                    path = self.workspace.resolve(file_path)
                    tx.read(path)
                except ExecutionError as exc:
                    for item in group:
                        errors.append(
                            ItemError(item.index, exc.message, location=file_path, kind=ErrorKind.parse(exc.kind))
                        )
                    continue
                for item in group:
                    result = self._apply(tx, path, item)
                    if isinstance(result, ItemError):
                        errors.append(result)
                    else:
                        applied.append(result)

            if not applied:
                tx.rollback("every replacement failed")
                LOGGER.info("All %d replacement(s) failed; nothing written", len(items))
                return PartialOutcome(0, len(errors), tuple(sorted(errors, key=lambda e: e.index)))
            try:
                written = tx.commit()
            except CommitError as exc:
                return _commit_failure(exc, f"{exc}; no files were changed")

        files = sorted({self.workspace.display(path) for path in written})
        LOGGER.info(
            "Applied %d of %d replacement(s) across %d file(s)",
            len(applied),
            len(items),
            len(files),
        )
        payload = {
            "files": files,
            "applied": sorted(applied, key=lambda entry: entry["index"]),
        }
        return PartialOutcome(
            success_count=len(applied),
            failure_count=len(errors),
            per_item_errors=tuple(sorted(errors, key=lambda e: e.index)),
            committed_payload=payload,
        )

    def _apply(self, tx: EditTransaction, path: Path, item: _Replacement) -> dict[str, Any] | ItemError:
        display = self.workspace.display(path)
        if item.old == "":
            return ItemError(item.index, "Cannot replace an empty string", location=display, kind=ErrorKind.VALIDATION)
        text = tx.read(path)
        try:
            occurrences = find_occurrences(
                text, item.old, case_insensitive=item.case_insensitive, use_regex=item.use_regex
            )
        except re.error as exc:
            return ItemError(
                item.index,
                f"Invalid regular expression: {exc}",
                location=display,
                kind=ErrorKind.VALIDATION,
                details={"oldString": item.old},
            )
        if not occurrences:
            return ItemError(
                item.index,
                f"String not found in file{item.mode}: \"{_preview(item.old)}\"",
                location=display,
                kind=ErrorKind.NOT_FOUND,
                details={"oldString": item.old},
            )
        updated = apply_replacement(
            text, item.old, item.new, case_insensitive=item.case_insensitive, use_regex=item.use_regex
        )
        tx.stage(path, updated)
        return {
            "index": item.index,
            "path": display,
            "occurrences": len(occurrences),
            "locations": f"Replaced at {_locations(occurrences)}",
        }
