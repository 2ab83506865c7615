from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Any
from uuid import UUID

from orchestrator.domain.states import ActorRole, Decision, DecisionPhase, LifecycleState

@dataclass(frozen=True)
class Actor:
    id: str
    role: ActorRole = ActorRole.EDITOR

@dataclass
class JobSpec:
    job_type: str
    payload: dict[str, Any] = field(default_factory=dict)
    priority: int = 0
    max_attempts: int = 3
    channel: Optional[str] = None
    entity_key: Optional[str] = None
    domain_id: Optional[UUID] = None
    scheduled_for: Optional[datetime] = None

    def dedup_key(self) -> str:
        return f"{self.job_type}:{self.entity_key}"

@dataclass(frozen=True)
class DecisionCommand:
    decision: Decision
    reason: str
    recommended_max_bid: Optional[float] = None
    clear_hard_fail: bool = False

@dataclass
class LifecycleAdvance:
    changed: bool
    from_state: Optional[LifecycleState]
    to_state: Optional[LifecycleState]
    applied_states: list[LifecycleState] = field(default_factory=list)
    skipped_reason: Optional[str] = None

@dataclass
class DecisionOutcome:
    candidate_id: UUID
    domain: str
    decision: Decision
    previous_decision: Optional[str]
    recommended_max_bid: Optional[float]
    review_task_status: str
    lifecycle: Optional[LifecycleAdvance] = None
    follow_on_job_id: Optional[UUID] = None
    notified: bool = False
    phase: DecisionPhase = DecisionPhase.COMMITTED

    @property
    def follow_on_queued(self) -> bool:
        return self.follow_on_job_id is not None

@dataclass
class BulkItemResult:
    candidate_id: UUID
    domain: Optional[str]
    status: str                        # updated | failed
    reason_code: Optional[str] = None
    reason: Optional[str] = None
    follow_on_job_id: Optional[UUID] = None
    review_task_status: Optional[str] = None

    @property
    def follow_on_queued(self) -> bool:
        return self.follow_on_job_id is not None

@dataclass
class BulkDecisionOutcome:
    decision: Decision
    results: list[BulkItemResult]
    notified: bool = False
    phase: DecisionPhase = DecisionPhase.COMMITTED

    @property
    def processed(self) -> int:
        return len(self.results)

    @property
    def updated(self) -> int:
        return sum(1 for r in self.results if r.status == "updated")

    @property
    def failed(self) -> int:
        return self.processed - self.updated

    @property
    def follow_on_queued(self) -> int:
        return sum(1 for r in self.results if r.follow_on_queued)
