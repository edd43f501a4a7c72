"""Feature lifecycle transitions.

The table below is the only place that decides whether a trigger applies.
Every (state, trigger) pair missing from it is rejected with
`InvalidTransition`; nothing is applied silently.
"""

from __future__ import annotations

from typing import Optional

from ..domain.models import Feature, FeatureStatus, Trigger, now_iso
from ..errors import InvalidTransition

S = FeatureStatus
T = Trigger

TRANSITIONS: dict[tuple[FeatureStatus, Trigger], FeatureStatus] = {
    (S.PENDING, T.SUBMIT_FOR_PLANNING): S.PLANNING,
    (S.PLANNING, T.PLAN_READY_AUTO): S.RUNNING,
    (S.PLANNING, T.PLAN_READY_APPROVAL): S.PLAN_AWAITING_APPROVAL,
    (S.PLANNING, T.PLAN_FAILED): S.FAILED,
    (S.PLAN_AWAITING_APPROVAL, T.APPROVE_PLAN): S.PLAN_APPROVED,
    (S.PLAN_APPROVED, T.START_EXECUTION): S.RUNNING,
    (S.PLAN_AWAITING_APPROVAL, T.REJECT_PLAN): S.PENDING,
    (S.RUNNING, T.AGENT_DONE): S.AWAITING_VERIFICATION,
    (S.AWAITING_VERIFICATION, T.VERIFY_PASS): S.VERIFIED,
    (S.AWAITING_VERIFICATION, T.VERIFY_FAIL): S.FAILED,
    (S.RUNNING, T.RUNTIME_ERROR): S.FAILED,
    (S.PLANNING, T.USER_STOP): S.STOPPED,
    (S.RUNNING, T.USER_STOP): S.STOPPED,
    (S.AWAITING_VERIFICATION, T.USER_STOP): S.STOPPED,
    (S.FAILED, T.RETRY): S.PENDING,
    (S.STOPPED, T.RESUME): S.PENDING,
}

# A scheduling pass ends for a feature once it reaches one of these.
TERMINAL_STATES = frozenset({S.VERIFIED, S.FAILED, S.STOPPED})
# States that occupy an execution slot.
ACTIVE_STATES = frozenset({S.PLANNING, S.RUNNING})
# States that hold a live workspace.
WORKSPACE_STATES = frozenset({S.PLANNING, S.PLAN_AWAITING_APPROVAL, S.PLAN_APPROVED, S.RUNNING, S.AWAITING_VERIFICATION})
EDITABLE_STATES = frozenset({S.PENDING, S.FAILED, S.STOPPED, S.PLAN_AWAITING_APPROVAL})


def next_state(state: FeatureStatus, trigger: Trigger, *, feature_id: Optional[str] = None) -> FeatureStatus:
    try:
        return TRANSITIONS[(state, trigger)]
    except KeyError:
        raise InvalidTransition(state.value, trigger.value, feature_id) from None


def can_apply(state: FeatureStatus, trigger: Trigger) -> bool:
    return (state, trigger) in TRANSITIONS


def allowed_triggers(state: FeatureStatus) -> list[Trigger]:
    return [trigger for (source, trigger) in TRANSITIONS if source == state]


def apply_transition(feature: Feature, trigger: Trigger, *, error: Optional[str] = None) -> FeatureStatus:
    """Move `feature` along `trigger` in place and return the previous state.

    Side effects on the record follow the trigger: failures attach `error`,
    `retry` clears it (dependencies are left untouched), `reject-plan`
    discards the plan.
    """
    previous = feature.status
    target = next_state(previous, trigger, feature_id=feature.id)

    if trigger in (T.RETRY, T.RESUME):
        feature.error = None
        feature.branch_name = None
    elif trigger == T.REJECT_PLAN:
        feature.plan = None
        feature.branch_name = None
    elif trigger == T.SUBMIT_FOR_PLANNING:
        feature.error = None
        feature.summary = None

    if error is not None:
        feature.error = error

    feature.status = target
    feature.updated_at = now_iso()
    return previous
