from enum import StrEnum, auto

class JobStatus(StrEnum):
    PENDING = auto()          # Created or retrying, waiting for a claim
    PROCESSING = auto()       # Claimed by a worker under a lease
    COMPLETED = auto()        # Finished successfully
    FAILED = auto()           # Failed; claimable again while attempts < max_attempts
    CANCELLED = auto()        # Cancelled out-of-band

ACTIVE_JOB_STATUSES = (JobStatus.PENDING, JobStatus.PROCESSING)

class JobEvent(StrEnum):
    CREATED = auto()
    CLAIMED = auto()
    RECLAIMED = auto()
    LEASE_RENEWED = auto()
    COMPLETED = auto()
    RETRIED = auto()
    FAILED = auto()
    CANCELLED = auto()

class LifecycleState(StrEnum):
    SOURCED = auto()
    UNDERWRITING = auto()
    APPROVED = auto()
    ACQUIRED = auto()
    BUILD = auto()
    GROWTH = auto()
    MONETIZED = auto()
    HOLD = auto()
    SELL = auto()
    SUNSET = auto()

class ActorRole(StrEnum):
    EDITOR = auto()
    REVIEWER = auto()
    EXPERT = auto()
    ADMIN = auto()

    @property
    def rank(self) -> int:
        return _ROLE_RANK[self]

_ROLE_RANK = {
    ActorRole.EDITOR: 1,
    ActorRole.REVIEWER: 2,
    ActorRole.EXPERT: 3,
    ActorRole.ADMIN: 4,
}

class Decision(StrEnum):
    BUY = auto()
    WATCHLIST = auto()
    PASS = auto()

class DecisionEventType(StrEnum):
    APPROVED = auto()
    WATCHLIST = auto()
    PASSED = auto()

class ReviewTaskStatus(StrEnum):
    PENDING = auto()
    APPROVED = auto()
    REJECTED = auto()
    CANCELLED = auto()

class DecisionPhase(StrEnum):
    VALIDATING = auto()
    REJECTED = auto()
    TRANSACTION_OPEN = auto()
    EFFECTS_APPLIED = auto()
    COMMITTED = auto()
    NOTIFIED = auto()
    ABORTED = auto()
