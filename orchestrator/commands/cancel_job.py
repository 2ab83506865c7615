from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from orchestrator.db.models import Job, JobEventLog
from orchestrator.domain.states import JobStatus, JobEvent
from orchestrator.domain.errors import JobNotFoundError, InvalidJobStateError
from orchestrator.utils.time import utcnow

TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.CANCELLED)

async def cancel_job(session: AsyncSession, job_id: UUID, reason: Optional[str] = None) -> Job:
    """
    Cancels a job that has not been claimed yet.

    Terminal jobs are returned unchanged. A processing job cannot be stopped
    mid-flight, so cancelling one is an error; a failed job can be cancelled
    to stop further retries.
    """
    now = utcnow()

    stmt = select(Job).where(Job.id == job_id).with_for_update()
    job = await session.scalar(stmt)
    if not job:
        raise JobNotFoundError(job_id)

    if job.status in TERMINAL_STATUSES:
        return job

    if job.status == JobStatus.PROCESSING:
        raise InvalidJobStateError(job.status, JobStatus.CANCELLED)

    previous = job.status
    job.status = JobStatus.CANCELLED
    job.updated_at = now
    job.completed_at = now
    job.locked_until = None
    job.lease_token = None

    session.add(JobEventLog(
        job_id=job.id,
        event_type=JobEvent.CANCELLED,
        timestamp=now,
        meta={"previous_status": str(previous), "reason": reason}
    ))
    await session.flush()
    return job
