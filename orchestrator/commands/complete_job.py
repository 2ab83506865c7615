from typing import Any, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from orchestrator.db.models import Job, JobEventLog
from orchestrator.domain.states import JobStatus, JobEvent
from orchestrator.api.v1.metrics import JOB_DURATION, JOB_COMPLETE_TOTAL
from orchestrator.domain.errors import JobNotFoundError, InvalidJobStateError, LeaseNotFoundError
from orchestrator.utils.time import utcnow, as_utc

async def complete_job(
    session: AsyncSession,
    job_id: UUID,
    result_data: Optional[dict[str, Any]] = None,
    lease_token: Optional[UUID] = None
) -> Job:
    """
    Marks a processing job COMPLETED, stores the result and releases the lease.

    A repeat completion of an already completed job is a no-op. When a lease
    token is given it must match the current lease; a worker whose lease was
    reclaimed by someone else cannot complete the job.
    """
    now = utcnow()

    stmt = select(Job).where(Job.id == job_id).with_for_update()
    job = await session.scalar(stmt)

    if not job:
        raise JobNotFoundError(job_id)

    if job.status == JobStatus.COMPLETED:
        return job

    if job.status != JobStatus.PROCESSING:
        raise InvalidJobStateError(job.status, JobStatus.COMPLETED)

    if lease_token is not None and job.lease_token != lease_token:
        raise LeaseNotFoundError(f"Lease for job {job_id} not found or token mismatch")

    job.status = JobStatus.COMPLETED
    job.result = result_data or {}
    job.completed_at = now
    job.updated_at = now
    job.error_message = None
    job.locked_until = None
    job.lease_token = None

    started_at = as_utc(job.started_at)
    if started_at:
        duration = (now - started_at).total_seconds()
        if duration > 0:
            JOB_DURATION.labels(job_type=job.job_type).observe(duration)

    JOB_COMPLETE_TOTAL.labels(job_type=job.job_type).inc()

    session.add(JobEventLog(
        job_id=job.id,
        event_type=JobEvent.COMPLETED,
        timestamp=now,
        meta={"worker_id": job.worker_id, "lease_token": str(lease_token) if lease_token else None}
    ))

    await session.flush()
    return job
