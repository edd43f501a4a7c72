from .state_machine import (
    ACTIVE_STATES,
    EDITABLE_STATES,
    TERMINAL_STATES,
    TRANSITIONS,
    WORKSPACE_STATES,
    allowed_triggers,
    apply_transition,
    can_apply,
    next_state,
)

__all__ = [
    "TRANSITIONS",
    "TERMINAL_STATES",
    "ACTIVE_STATES",
    "WORKSPACE_STATES",
    "EDITABLE_STATES",
    "next_state",
    "can_apply",
    "allowed_triggers",
    "apply_transition",
]
