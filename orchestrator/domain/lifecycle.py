"""
Domain lifecycle policy.

Pure rules only: which lifecycle moves exist, which roles may make them and
which moves need a written reason. Persistence lives in
orchestrator.commands.transition_lifecycle.
"""
from dataclasses import dataclass
from typing import Optional, Union

from orchestrator.domain.errors import (
    ForbiddenError,
    IllegalTransitionError,
    ReasonRequiredError,
)
from orchestrator.domain.states import ActorRole, LifecycleState

MIN_REASON_LENGTH = 8

S = LifecycleState
R = ActorRole

ALL_ROLES = frozenset(R)
EXPERTS = frozenset({R.EXPERT, R.ADMIN})
ADMINS = frozenset({R.ADMIN})

@dataclass(frozen=True)
class TransitionRule:
    to: LifecycleState
    allowed_roles: frozenset
    reason_required: bool = False

TRANSITIONS: dict[LifecycleState, tuple[TransitionRule, ...]] = {
    S.SOURCED: (
        TransitionRule(S.UNDERWRITING, ALL_ROLES),
        TransitionRule(S.HOLD, EXPERTS, reason_required=True),
        TransitionRule(S.SUNSET, ADMINS, reason_required=True),
    ),
    S.UNDERWRITING: (
        TransitionRule(S.APPROVED, frozenset({R.REVIEWER, R.EXPERT, R.ADMIN})),
        TransitionRule(S.HOLD, frozenset({R.REVIEWER, R.EXPERT, R.ADMIN}), reason_required=True),
        TransitionRule(S.SUNSET, EXPERTS, reason_required=True),
    ),
    S.APPROVED: (
        TransitionRule(S.ACQUIRED, EXPERTS),
        TransitionRule(S.HOLD, EXPERTS, reason_required=True),
        TransitionRule(S.SUNSET, ADMINS, reason_required=True),
    ),
    S.ACQUIRED: (
        TransitionRule(S.BUILD, frozenset({R.EDITOR, R.EXPERT, R.ADMIN})),
        TransitionRule(S.HOLD, EXPERTS, reason_required=True),
        TransitionRule(S.SELL, EXPERTS, reason_required=True),
    ),
    S.BUILD: (
        TransitionRule(S.GROWTH, frozenset({R.EDITOR, R.EXPERT, R.ADMIN})),
        TransitionRule(S.HOLD, EXPERTS, reason_required=True),
        TransitionRule(S.SELL, EXPERTS, reason_required=True),
    ),
    S.GROWTH: (
        TransitionRule(S.MONETIZED, frozenset({R.EDITOR, R.EXPERT, R.ADMIN})),
        TransitionRule(S.HOLD, EXPERTS, reason_required=True),
        TransitionRule(S.SELL, EXPERTS, reason_required=True),
        TransitionRule(S.SUNSET, ADMINS, reason_required=True),
    ),
    S.MONETIZED: (
        TransitionRule(S.GROWTH, frozenset({R.EDITOR, R.EXPERT, R.ADMIN})),
        TransitionRule(S.HOLD, EXPERTS, reason_required=True),
        TransitionRule(S.SELL, EXPERTS, reason_required=True),
        TransitionRule(S.SUNSET, ADMINS, reason_required=True),
    ),
    S.HOLD: (
        TransitionRule(S.GROWTH, EXPERTS),
        TransitionRule(S.SELL, EXPERTS, reason_required=True),
        TransitionRule(S.SUNSET, ADMINS, reason_required=True),
    ),
    S.SELL: (
        TransitionRule(S.SUNSET, ADMINS, reason_required=True),
    ),
    S.SUNSET: (),
}

# Forward path walked when a buy decision pulls a domain towards acquisition.
ACQUISITION_PROGRESSION: tuple[LifecycleState, ...] = (
    S.SOURCED,
    S.UNDERWRITING,
    S.APPROVED,
    S.ACQUIRED,
    S.BUILD,
    S.GROWTH,
    S.MONETIZED,
)

def normalize_state(value: Optional[str]) -> LifecycleState:
    """Unknown or missing stored states read as `sourced`."""
    try:
        return LifecycleState(value)
    except ValueError:
        return LifecycleState.SOURCED

def normalize_role(value: Union[ActorRole, str, None]) -> ActorRole:
    if not value:
        return ActorRole.EDITOR
    return ActorRole(value)

def find_rule(from_state: LifecycleState, to_state: LifecycleState) -> Optional[TransitionRule]:
    for rule in TRANSITIONS.get(from_state, ()):
        if rule.to == to_state:
            return rule
    return None

def authorize_transition(
    from_state: LifecycleState,
    to_state: LifecycleState,
    role: Union[ActorRole, str, None],
    reason: Optional[str] = None,
) -> bool:
    """
    Checks a lifecycle move against the transition table.

    Returns False when from_state == to_state (nothing to do) and True when the
    move is allowed. Raises IllegalTransitionError, ForbiddenError or
    ReasonRequiredError otherwise.
    """
    if from_state == to_state:
        return False

    actor_role = normalize_role(role)
    rule = find_rule(from_state, to_state)
    if rule is None:
        raise IllegalTransitionError(from_state, to_state)

    if actor_role not in rule.allowed_roles:
        raise ForbiddenError(f"Role {actor_role} cannot transition {from_state} -> {to_state}")

    if rule.reason_required and len((reason or "").strip()) < MIN_REASON_LENGTH:
        raise ReasonRequiredError(from_state, to_state, MIN_REASON_LENGTH)

    return True

def allowed_transitions(
    from_state: LifecycleState,
    role: Union[ActorRole, str, None],
) -> list[LifecycleState]:
    actor_role = normalize_role(role)
    return [rule.to for rule in TRANSITIONS.get(from_state, ()) if actor_role in rule.allowed_roles]

def acquisition_path(
    current: LifecycleState,
    target: LifecycleState,
) -> list[LifecycleState]:
    """
    States to step through to move `current` forward to `target` along the
    acquisition progression. Empty when the domain is already at or beyond the
    target, or sits outside the progression (hold, sell, sunset).
    """
    if current not in ACQUISITION_PROGRESSION or target not in ACQUISITION_PROGRESSION:
        return []
    current_index = ACQUISITION_PROGRESSION.index(current)
    target_index = ACQUISITION_PROGRESSION.index(target)
    if current_index >= target_index:
        return []
    return list(ACQUISITION_PROGRESSION[current_index + 1:target_index + 1])
