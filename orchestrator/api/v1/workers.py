from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from orchestrator.api.deps import DbSession
from orchestrator.api.errors import to_http_exception
from orchestrator.auth.security import SignatureVerifier
from orchestrator.commands.complete_job import complete_job
from orchestrator.commands.fail_job import fail_job
from orchestrator.commands.heartbeat import heartbeat
from orchestrator.commands.lease_job import claim_next
from orchestrator.domain.errors import OrchestratorError
from orchestrator.domain.states import JobStatus

router = APIRouter(dependencies=[Depends(SignatureVerifier())])

class ClaimRequest(BaseModel):
    worker_id: str
    channel: Optional[str] = None
    # Fall back to other channels when this one is empty
    fallback: bool = False
    lease_duration_seconds: Optional[int] = Field(default=None, ge=1)

class JobDTO(BaseModel):
    id: UUID
    job_type: str
    status: JobStatus
    channel: Optional[str] = None
    payload: dict[str, Any]
    attempts: int
    max_attempts: int
    model_config = ConfigDict(from_attributes=True)

class ClaimResponse(BaseModel):
    job: JobDTO
    lease_token: UUID
    expires_at: datetime

class HeartbeatRequest(BaseModel):
    worker_id: str
    lease_token: UUID
    extend_seconds: Optional[int] = Field(default=None, ge=1)

class CompleteRequest(BaseModel):
    worker_id: str
    lease_token: UUID
    result: dict[str, Any] = Field(default_factory=dict)

class FailRequest(BaseModel):
    worker_id: str
    lease_token: UUID
    error: str

@router.post("/claim", response_model=Optional[ClaimResponse])
async def claim_job(body: ClaimRequest, session: DbSession):
    job = await claim_next(
        session,
        worker_id=body.worker_id,
        channel=body.channel,
        lease_duration=body.lease_duration_seconds,
        fallback=body.fallback,
    )
    if not job:
        await session.rollback()
        return None

    await session.commit()
    return ClaimResponse(
        job=JobDTO.model_validate(job),
        lease_token=job.lease_token,
        expires_at=job.locked_until,
    )

@router.post("/{job_id}/heartbeat")
async def job_heartbeat(job_id: UUID, body: HeartbeatRequest, session: DbSession):
    try:
        new_expires_at = await heartbeat(
            session,
            job_id=job_id,
            lease_token=body.lease_token,
            extend_seconds=body.extend_seconds
        )
        await session.commit()
        return {"expires_at": new_expires_at}
    except OrchestratorError as e:
        raise to_http_exception(e)

@router.post("/{job_id}/complete")
async def job_complete(job_id: UUID, body: CompleteRequest, session: DbSession):
    try:
        job = await complete_job(
            session,
            job_id=job_id,
            result_data=body.result,
            lease_token=body.lease_token
        )
        await session.commit()
        return {"status": "success", "job_status": job.status}
    except OrchestratorError as e:
        raise to_http_exception(e)

@router.post("/{job_id}/fail")
async def job_fail(job_id: UUID, body: FailRequest, session: DbSession):
    try:
        job = await fail_job(
            session,
            job_id=job_id,
            error=body.error,
            lease_token=body.lease_token
        )
        await session.commit()
        return {"status": "failed", "job_status": job.status}  # pending (retry) or failed
    except OrchestratorError as e:
        raise to_http_exception(e)
