"""Approval policies consulted before a call executes."""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Protocol, Union, runtime_checkable

from ..types import ValidatedCall

__all__ = [
    "ApprovalDecision",
    "ApprovalPolicy",
    "AutoApprove",
    "CallbackApproval",
    "ManualApproval",
]

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class ApprovalDecision:
    approved: bool
    feedback: str = ""

    @classmethod
    def approve(cls) -> "ApprovalDecision":
        return cls(approved=True)

    @classmethod
    def deny(cls, feedback: str = "") -> "ApprovalDecision":
        return cls(approved=False, feedback=feedback)


@runtime_checkable
class ApprovalPolicy(Protocol):
    """Decides whether a call may run.

    Returning ``None`` defers the decision to an explicit
    ``approve()``/``reject()`` on the lifecycle manager.
    """

    async def decide(self, call: ValidatedCall) -> ApprovalDecision | None:
        ...


class AutoApprove:
    """Approves every call."""

    async def decide(self, call: ValidatedCall) -> ApprovalDecision:
        return ApprovalDecision.approve()


class ManualApproval:
    """Always waits for an external ``approve()`` or ``reject()``."""

    async def decide(self, call: ValidatedCall) -> None:
        return None


CallbackResult = Union[bool, ApprovalDecision, None]
ApprovalCallback = Callable[[ValidatedCall], Union[CallbackResult, Awaitable[CallbackResult]]]


class CallbackApproval:
    """Delegates the decision to a sync or async callable.

    The callable may return a bool, an :class:`ApprovalDecision`, or
    ``None`` to defer. A callback that raises denies the call.
    """

    def __init__(self, callback: ApprovalCallback) -> None:
        self._callback = callback

    async def decide(self, call: ValidatedCall) -> ApprovalDecision | None:
        try:
            result: Any = self._callback(call)
            if inspect.isawaitable(result):
                result = await result
        except Exception as exc:
            LOGGER.warning("Approval callback failed for %s: %s", call.id, exc, exc_info=True)
            return ApprovalDecision.deny(f"approval callback failed: {exc}")
        if result is None or isinstance(result, ApprovalDecision):
            return result
        return ApprovalDecision(approved=bool(result))
