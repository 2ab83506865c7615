from datetime import datetime
from typing import Any, Literal, Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, Response, status
from pydantic import BaseModel, ConfigDict, Field

from orchestrator.api.deps import DbSession
from orchestrator.api.errors import to_http_exception
from orchestrator.commands.cancel_job import cancel_job
from orchestrator.commands.enqueue_job import enqueue, enqueue_if_absent, find_active_job
from orchestrator.db.models import Job
from orchestrator.domain.errors import OrchestratorError
from orchestrator.domain.models import JobSpec
from orchestrator.domain.states import JobStatus
from orchestrator.queries.jobs import DEFAULT_LIMIT, MAX_LIMIT, JobFilter, get_queue_health, get_queue_stats, list_jobs

router = APIRouter()

class JobCreate(BaseModel):
    job_type: str = Field(min_length=1, max_length=100)
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: int = 0
    max_attempts: int = Field(default=3, ge=1, le=50)
    channel: Optional[str] = None
    entity_key: Optional[str] = None
    domain_id: Optional[UUID] = None
    scheduled_for: Optional[datetime] = None
    # Skip creation when an active job of this type already exists for entity_key
    if_absent: bool = False

class JobResponse(BaseModel):
    id: UUID
    job_type: str
    status: JobStatus
    priority: int
    channel: Optional[str] = None
    entity_key: Optional[str] = None
    domain_id: Optional[UUID] = None
    payload: dict[str, Any]
    result: Optional[dict[str, Any]] = None
    attempts: int
    max_attempts: int
    error_message: Optional[str] = None
    scheduled_for: Optional[datetime] = None
    locked_until: Optional[datetime] = None
    worker_id: Optional[str] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)

@router.post("", response_model=JobResponse, status_code=status.HTTP_201_CREATED)
async def create_job(body: JobCreate, session: DbSession, response: Response):
    spec = JobSpec(
        job_type=body.job_type,
        payload=body.payload,
        priority=body.priority,
        max_attempts=body.max_attempts,
        channel=body.channel,
        entity_key=body.entity_key,
        domain_id=body.domain_id,
        scheduled_for=body.scheduled_for,
    )

    if body.if_absent:
        if not body.entity_key:
            raise HTTPException(status_code=400, detail="entity_key is required with if_absent")
        job_id = await enqueue_if_absent(session, spec)
        if job_id is None:
            existing = await find_active_job(session, spec.job_type, spec.entity_key)
            await session.commit()
            response.status_code = status.HTTP_200_OK
            return existing
    else:
        try:
            job_id = await enqueue(session, spec)
        except OrchestratorError as e:
            raise to_http_exception(e)

    await session.commit()
    return await session.get(Job, job_id)

@router.get("", response_model=list[JobResponse])
async def search_jobs(
    session: DbSession,
    status_filter: Optional[JobStatus] = Query(None, alias="status"),
    sla: Literal["all", "ok", "breached"] = "all",
    job_types: Optional[list[str]] = Query(None),
    channel: Optional[str] = None,
    domain_id: Optional[UUID] = None,
    preset: Optional[Literal["failures", "stalled", "deploy", "acquisition"]] = None,
    q: Optional[str] = None,
    limit: int = Query(DEFAULT_LIMIT, ge=1, le=MAX_LIMIT),
):
    job_filter = JobFilter(
        status=status_filter,
        sla=sla,
        # Accept both ?job_types=a&job_types=b and ?job_types=a,b
        job_types=tuple(dict.fromkeys(t.strip() for v in job_types or () for t in v.split(",") if t.strip())),
        channel=channel,
        domain_id=domain_id,
        preset=preset,
        q=q,
        limit=limit,
    )
    return await list_jobs(session, job_filter)

@router.get("/stats")
async def queue_stats(session: DbSession):
    return await get_queue_stats(session)

@router.get("/health")
async def queue_health(session: DbSession):
    return await get_queue_health(session)

@router.get("/{job_id}", response_model=JobResponse)
async def get_job(job_id: UUID, session: DbSession):
    job = await session.get(Job, job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job

@router.post("/{job_id}/cancel", response_model=JobResponse)
async def cancel(job_id: UUID, session: DbSession):
    try:
        job = await cancel_job(session, job_id)
        await session.commit()
        return job
    except OrchestratorError as e:
        raise to_http_exception(e)
