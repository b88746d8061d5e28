"""Allowed call state transitions."""

from __future__ import annotations

from typing import Mapping

from ..errors import InvalidTransitionError
from ..types import CallState

__all__ = ["ALLOWED_TRANSITIONS", "can_transition", "check_transition"]

ALLOWED_TRANSITIONS: Mapping[CallState, frozenset[CallState]] = {
    CallState.QUEUED: frozenset({CallState.AWAITING_APPROVAL, CallState.FAILED}),
    CallState.AWAITING_APPROVAL: frozenset({CallState.EXECUTING, CallState.REJECTED}),
    CallState.EXECUTING: frozenset(
        {
            CallState.SUCCEEDED,
            CallState.PARTIALLY_SUCCEEDED,
            CallState.FAILED,
            CallState.CANCELLED,
        }
    ),
    CallState.SUCCEEDED: frozenset(),
    CallState.PARTIALLY_SUCCEEDED: frozenset(),
    CallState.FAILED: frozenset(),
    CallState.REJECTED: frozenset(),
    CallState.CANCELLED: frozenset(),
}


def can_transition(current: CallState, target: CallState) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def check_transition(call_id: str, current: CallState, target: CallState) -> None:
    """Raise :class:`InvalidTransitionError` unless ``current -> target`` is allowed."""
    if not can_transition(current, target):
        raise InvalidTransitionError(call_id=call_id, current=current.value, target=target.value)
