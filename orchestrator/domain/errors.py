class OrchestratorError(Exception):
    """Base exception for orchestrator errors."""
    code = "orchestrator_error"

class ValidationError(OrchestratorError):
    code = "validation_error"

class MissingMaxBidError(ValidationError):
    code = "missing_max_bid"

    def __init__(self, candidate_id=None):
        detail = "A positive recommended max bid is required for a buy decision"
        if candidate_id is not None:
            detail = f"{detail} (candidate {candidate_id})"
        super().__init__(detail)

class ForbiddenError(OrchestratorError):
    code = "forbidden"

class HardFailBlockedError(ForbiddenError):
    code = "hard_fail_blocked"

    def __init__(self, candidate_id, hard_fail_reason):
        self.hard_fail_reason = hard_fail_reason
        super().__init__(
            f"Candidate {candidate_id} is blocked by a hard fail ({hard_fail_reason}); "
            "an admin override is required to buy"
        )

class IllegalTransitionError(OrchestratorError):
    code = "illegal_transition"

    def __init__(self, from_state, to_state):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Lifecycle transition {from_state} -> {to_state} is not allowed")

class ReasonRequiredError(OrchestratorError):
    code = "reason_required"

    def __init__(self, from_state, to_state, min_length):
        super().__init__(
            f"Transition {from_state} -> {to_state} requires a reason of at least {min_length} characters"
        )

class NotFoundError(OrchestratorError):
    code = "not_found"

class JobNotFoundError(NotFoundError):
    def __init__(self, job_id):
        super().__init__(f"Job {job_id} not found")

class CandidateNotFoundError(NotFoundError):
    code = "candidate_not_found"

    def __init__(self, candidate_id):
        super().__init__(f"Acquisition candidate {candidate_id} not found")

class DomainNotFoundError(NotFoundError):
    def __init__(self, domain_id):
        super().__init__(f"Domain {domain_id} not found")

class DuplicateJobConflict(OrchestratorError):
    code = "duplicate_job"

    def __init__(self, job_type, entity_key):
        super().__init__(f"An active {job_type} job already exists for {entity_key}")

class ConcurrentUpdateError(OrchestratorError):
    code = "concurrent_update"

class TransactionAborted(OrchestratorError):
    code = "transaction_aborted"

class NotificationFailed(OrchestratorError):
    code = "notification_failed"

class InvalidJobStateError(OrchestratorError):
    code = "invalid_job_state"

    def __init__(self, current_status, target_status):
        super().__init__(f"Cannot transition from {current_status} to {target_status}")

class LeaseError(OrchestratorError):
    code = "lease_error"

class LeaseExpiredError(LeaseError):
    pass

class LeaseNotFoundError(LeaseError):
    pass
