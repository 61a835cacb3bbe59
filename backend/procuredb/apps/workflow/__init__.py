from procuredb.apps.workflow.engine import (
    TransitionContext,
    ValidationResult,
    allowed_transitions,
    apply_transition,
    can_transition,
    check_transition,
    is_terminal,
)
from procuredb.apps.workflow.registry import WORKFLOWS

__all__ = [
    "TransitionContext",
    "ValidationResult",
    "WORKFLOWS",
    "allowed_transitions",
    "apply_transition",
    "can_transition",
    "check_transition",
    "is_terminal",
]
