"""Call lifecycle: state machine, approval and execution driving."""

from .approval import ApprovalDecision, ApprovalPolicy, AutoApprove, CallbackApproval, ManualApproval
from .manager import CallLifecycleManager, result_from_outcome
from .states import ALLOWED_TRANSITIONS, can_transition, check_transition

__all__ = [
    "CallLifecycleManager",
    "result_from_outcome",
    "ApprovalDecision",
    "ApprovalPolicy",
    "AutoApprove",
    "CallbackApproval",
    "ManualApproval",
    "ALLOWED_TRANSITIONS",
    "can_transition",
    "check_transition",
]
