from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select

from orchestrator.api.deps import CurrentActor, DbSession
from orchestrator.api.errors import to_http_exception
from orchestrator.commands.transition_lifecycle import transition_lifecycle
from orchestrator.db.models import Domain, LifecycleEvent
from orchestrator.domain.errors import OrchestratorError
from orchestrator.domain.lifecycle import allowed_transitions, normalize_state
from orchestrator.domain.states import LifecycleState

router = APIRouter()

class TransitionRequest(BaseModel):
    to_state: LifecycleState
    reason: Optional[str] = Field(default=None, max_length=1000)
    metadata: dict[str, Any] = Field(default_factory=dict)

class LifecycleEventResponse(BaseModel):
    id: int
    actor_id: Optional[str] = None
    actor_role: Optional[str] = None
    from_state: str
    to_state: str
    reason: Optional[str] = None
    meta: dict[str, Any] = Field(default_factory=dict, serialization_alias="metadata")
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)

class DomainLifecycleResponse(BaseModel):
    id: UUID
    domain: str
    lifecycle_state: LifecycleState
    allowed_transitions: list[LifecycleState]
    events: list[LifecycleEventResponse] = Field(default_factory=list)

class TransitionResponse(BaseModel):
    id: UUID
    domain: str
    changed: bool
    from_state: LifecycleState
    lifecycle_state: LifecycleState
    allowed_transitions: list[LifecycleState]

@router.get("/{domain_id}/lifecycle", response_model=DomainLifecycleResponse)
async def get_lifecycle(
    domain_id: UUID,
    session: DbSession,
    actor: CurrentActor,
    limit: int = Query(50, ge=1, le=200),
):
    domain = await session.get(Domain, domain_id)
    if not domain:
        raise HTTPException(status_code=404, detail="Domain not found")

    events = (await session.execute(
        select(LifecycleEvent)
        .where(LifecycleEvent.domain_id == domain_id)
        .order_by(LifecycleEvent.created_at.desc(), LifecycleEvent.id.desc())
        .limit(limit)
    )).scalars().all()

    state = normalize_state(domain.lifecycle_state)
    return DomainLifecycleResponse(
        id=domain.id,
        domain=domain.domain,
        lifecycle_state=state,
        allowed_transitions=allowed_transitions(state, actor.role),
        events=[LifecycleEventResponse.model_validate(e) for e in events],
    )

@router.post("/{domain_id}/lifecycle", response_model=TransitionResponse)
async def post_transition(domain_id: UUID, body: TransitionRequest, session: DbSession, actor: CurrentActor):
    try:
        result = await transition_lifecycle(
            session,
            domain_id,
            body.to_state,
            actor,
            reason=body.reason,
            metadata=body.metadata,
        )
        await session.commit()
    except OrchestratorError as e:
        await session.rollback()
        raise to_http_exception(e)

    domain = await session.get(Domain, domain_id)
    return TransitionResponse(
        id=domain_id,
        domain=domain.domain,
        changed=result.changed,
        from_state=result.from_state,
        lifecycle_state=result.to_state,
        allowed_transitions=allowed_transitions(result.to_state, actor.role),
    )
