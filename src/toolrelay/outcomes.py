"""Values a capability handler returns from ``execute``.

Handlers report expected failure modes by returning a
:class:`FailureOutcome` (or a :class:`PartialOutcome` for decomposable
work) instead of raising. Exceptions that do escape are classified by the
dispatch layer into the same :class:`ErrorInfo` shape.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Union

__all__ = [
    "ErrorKind",
    "ErrorInfo",
    "ItemError",
    "SuccessOutcome",
    "FailureOutcome",
    "PartialOutcome",
    "Outcome",
]


class ErrorKind(str, Enum):
    """Normalized failure categories."""

    TIMEOUT = "timeout"
    CONNECTION_REFUSED = "connection_refused"
    DNS_FAILURE = "dns_failure"
    VALIDATION = "validation"
    PERMISSION = "permission"
    NOT_FOUND = "not_found"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: "str | ErrorKind | None") -> "ErrorKind":
        if isinstance(value, ErrorKind):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.UNKNOWN


_DEFAULT_MESSAGES = {
    ErrorKind.TIMEOUT: "The operation timed out",
    ErrorKind.CONNECTION_REFUSED: "The connection was refused",
    ErrorKind.DNS_FAILURE: "The host name could not be resolved",
    ErrorKind.VALIDATION: "The parameters were invalid",
    ErrorKind.PERMISSION: "The operation was not permitted",
    ErrorKind.NOT_FOUND: "The target was not found",
    ErrorKind.UNKNOWN: "The operation failed",
}


@dataclass(slots=True, frozen=True)
class ErrorInfo:
    """Typed description of a failure.

    Attributes:
        kind: Normalized failure category.
        message: Human-readable description; never empty.
        hint: Remediation guidance, empty when none applies.
        transient: Whether retrying the same call may succeed.
        details: Additional structured information.
    """

    kind: ErrorKind
    message: str = ""
    hint: str = ""
    transient: bool = False
    details: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        kind = ErrorKind.parse(self.kind)
        object.__setattr__(self, "kind", kind)
        if not self.message:
            object.__setattr__(self, "message", _DEFAULT_MESSAGES[kind])

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "hint": self.hint,
            "transient": self.transient,
            "details": dict(self.details),
        }


@dataclass(slots=True, frozen=True)
class ItemError:
    """Failure of one sub-operation inside a decomposable call.

    Attributes:
        index: Position of the sub-operation in the request.
        message: What went wrong for this item.
        location: Where it applies (for example ``path`` or ``path:line``).
        kind: Failure category of the item.
        details: Extra item data such as the text that was searched for.
    """

    index: int
    message: str
    location: str = ""
    kind: ErrorKind = ErrorKind.UNKNOWN
    details: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "message": self.message,
            "location": self.location,
            "kind": ErrorKind.parse(self.kind).value,
            "details": dict(self.details),
        }


@dataclass(slots=True, frozen=True)
class SuccessOutcome:
    payload: Any = None


@dataclass(slots=True, frozen=True)
class FailureOutcome:
    error: ErrorInfo

    @classmethod
    def of(cls, kind: ErrorKind | str, message: str, *, hint: str = "", transient: bool = False, **details: Any) -> "FailureOutcome":
        return cls(ErrorInfo(kind=ErrorKind.parse(kind), message=message, hint=hint, transient=transient, details=details))


@dataclass(slots=True, frozen=True)
class PartialOutcome:
    """Aggregate of independent sub-operations.

    The handler must already have committed exactly the successful subset
    when it returns this; when ``success_count`` is zero it must have
    committed nothing.
    """

    success_count: int
    failure_count: int
    per_item_errors: tuple[ItemError, ...] = ()
    committed_payload: Any = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "per_item_errors", tuple(self.per_item_errors))
        if self.success_count < 0 or self.failure_count < 0:
            raise ValueError("Partial outcome counts must be non-negative")
        if len(self.per_item_errors) != self.failure_count:
            raise ValueError(
                f"Partial outcome reports {self.failure_count} failure(s) but carries "
                f"{len(self.per_item_errors)} item error(s)"
            )


Outcome = Union[SuccessOutcome, FailureOutcome, PartialOutcome]
