from typing import Optional

from orchestrator.domain.errors import (
    ForbiddenError,
    HardFailBlockedError,
    MissingMaxBidError,
    ValidationError,
)
from orchestrator.domain.lifecycle import normalize_role
from orchestrator.domain.models import Actor, DecisionCommand
from orchestrator.domain.states import (
    ActorRole,
    Decision,
    DecisionEventType,
    ReviewTaskStatus,
)

MIN_REASON_LENGTH = 8
MAX_REASON_LENGTH = 500
MAX_BID_CEILING = 25000
UNDERWRITING_VERSION = "acquisition_underwriting_v1"

DECISION_EVENT_TYPES = {
    Decision.BUY: DecisionEventType.APPROVED,
    Decision.WATCHLIST: DecisionEventType.WATCHLIST,
    Decision.PASS: DecisionEventType.PASSED,
}

def validate_command(command: DecisionCommand, actor: Actor) -> None:
    """Input and privilege checks that need no database access."""
    try:
        Decision(command.decision)
    except ValueError:
        raise ValidationError(f"Unknown decision {command.decision!r}")

    reason_length = len((command.reason or "").strip())
    if reason_length < MIN_REASON_LENGTH or reason_length > MAX_REASON_LENGTH:
        raise ValidationError(
            f"Decision reason must be between {MIN_REASON_LENGTH} and {MAX_REASON_LENGTH} characters"
        )

    bid = command.recommended_max_bid
    if bid is not None and not (0 <= bid <= MAX_BID_CEILING):
        raise ValidationError(f"recommended_max_bid must be between 0 and {MAX_BID_CEILING}")

    try:
        role = normalize_role(actor.role)
    except ValueError:
        raise ValidationError(f"Unknown actor role {actor.role!r}")

    if role.rank < ActorRole.REVIEWER.rank:
        raise ForbiddenError("Acquisition decisions require the reviewer role or higher")

    if command.clear_hard_fail and role != ActorRole.ADMIN:
        raise ForbiddenError("Only admins can clear hard-fail flags")

def resolve_max_bid(command: DecisionCommand, stored_max_bid: Optional[float]) -> Optional[float]:
    if command.recommended_max_bid is not None:
        return command.recommended_max_bid
    return stored_max_bid

def check_candidate(
    command: DecisionCommand,
    candidate_id,
    hard_fail_reason: Optional[str],
    stored_max_bid: Optional[float],
) -> Optional[float]:
    """
    Business preconditions against the candidate's current values.
    Returns the effective max bid to persist.
    """
    if command.decision == Decision.BUY and hard_fail_reason and not command.clear_hard_fail:
        raise HardFailBlockedError(candidate_id, hard_fail_reason)

    effective_max_bid = resolve_max_bid(command, stored_max_bid)
    if command.decision == Decision.BUY and (not effective_max_bid or effective_max_bid <= 0):
        raise MissingMaxBidError(candidate_id)

    return effective_max_bid

def review_task_status_for(decision: Decision) -> ReviewTaskStatus:
    if decision == Decision.BUY:
        return ReviewTaskStatus.APPROVED
    return ReviewTaskStatus.REJECTED
