from typing import Optional
from uuid import UUID

from fastapi import APIRouter
from pydantic import BaseModel, Field

from orchestrator.api.deps import CurrentActor, Orchestrator
from orchestrator.api.errors import to_http_exception
from orchestrator.domain.decisions import MAX_BID_CEILING, MAX_REASON_LENGTH, MIN_REASON_LENGTH
from orchestrator.domain.errors import OrchestratorError
from orchestrator.domain.models import BulkDecisionOutcome, DecisionCommand, DecisionOutcome
from orchestrator.domain.states import Decision
from orchestrator.settings import settings

router = APIRouter()

class DecisionRequest(BaseModel):
    decision: Decision
    reason: str = Field(min_length=MIN_REASON_LENGTH, max_length=MAX_REASON_LENGTH)
    recommended_max_bid: Optional[float] = Field(default=None, ge=0, le=MAX_BID_CEILING)
    clear_hard_fail: bool = False

    def to_command(self) -> DecisionCommand:
        return DecisionCommand(
            decision=self.decision,
            reason=self.reason,
            recommended_max_bid=self.recommended_max_bid,
            clear_hard_fail=self.clear_hard_fail,
        )

class BulkDecisionRequest(DecisionRequest):
    candidate_ids: list[UUID] = Field(min_length=1, max_length=settings.BULK_DECISION_MAX_ITEMS)

def _serialize_outcome(outcome: DecisionOutcome) -> dict:
    lifecycle = None
    if outcome.lifecycle is not None:
        lifecycle = {
            "changed": outcome.lifecycle.changed,
            "from_state": outcome.lifecycle.from_state,
            "to_state": outcome.lifecycle.to_state,
            "applied_states": outcome.lifecycle.applied_states,
            "skipped_reason": outcome.lifecycle.skipped_reason,
        }
    return {
        "success": True,
        "candidate_id": outcome.candidate_id,
        "domain": outcome.domain,
        "decision": outcome.decision,
        "previous_decision": outcome.previous_decision,
        "recommended_max_bid": outcome.recommended_max_bid,
        "review_task_status": outcome.review_task_status,
        "lifecycle": lifecycle,
        "bid_plan_job_id": outcome.follow_on_job_id,
        "bid_plan_queued": outcome.follow_on_queued,
        "notified": outcome.notified,
        "phase": outcome.phase,
    }

def _serialize_bulk(outcome: BulkDecisionOutcome) -> dict:
    return {
        "success": True,
        "decision": outcome.decision,
        "processed": outcome.processed,
        "updated": outcome.updated,
        "failed": outcome.failed,
        "bid_plan_queued": outcome.follow_on_queued,
        "notified": outcome.notified,
        "results": [
            {
                "id": item.candidate_id,
                "domain": item.domain,
                "status": item.status,
                "reason_code": item.reason_code,
                "reason": item.reason,
                "bid_plan_queued": item.follow_on_queued,
                "review_task_status": item.review_task_status,
            }
            for item in outcome.results
        ],
    }

@router.post("/candidates/{candidate_id}/decision")
async def post_decision(candidate_id: UUID, body: DecisionRequest, actor: CurrentActor, orchestrator: Orchestrator):
    try:
        outcome = await orchestrator.apply_decision(candidate_id, body.to_command(), actor)
    except OrchestratorError as e:
        raise to_http_exception(e)
    return _serialize_outcome(outcome)

@router.post("/candidates/bulk-decision")
async def post_bulk_decision(body: BulkDecisionRequest, actor: CurrentActor, orchestrator: Orchestrator):
    try:
        outcome = await orchestrator.apply_bulk_decision(body.candidate_ids, body.to_command(), actor)
    except OrchestratorError as e:
        raise to_http_exception(e)
    return _serialize_bulk(outcome)
