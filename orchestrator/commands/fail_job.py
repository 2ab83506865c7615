from datetime import timedelta
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from orchestrator.db.models import Job, JobEventLog
from orchestrator.domain.states import JobStatus, JobEvent
from orchestrator.domain.retry import calculate_next_run, has_attempts_remaining
from orchestrator.domain.errors import JobNotFoundError, InvalidJobStateError, LeaseNotFoundError
from orchestrator.api.v1.metrics import JOB_FAILURES
from orchestrator.settings import settings
from orchestrator.utils.time import utcnow

async def fail_job(
    session: AsyncSession,
    job_id: UUID,
    error: str,
    lease_token: Optional[UUID] = None,
    retry_delay_seconds: Optional[float] = None
) -> Job:
    """
    Records a failed attempt.

    attempts += 1; with attempts remaining the job goes back to PENDING,
    unleased, and becomes due again after the exponential backoff (or the
    explicit retry_delay_seconds). Otherwise it is FAILED for good.
    """
    now = utcnow()

    stmt = select(Job).where(Job.id == job_id).with_for_update()
    job = await session.scalar(stmt)

    if not job:
        raise JobNotFoundError(job_id)

    if job.status != JobStatus.PROCESSING:
        raise InvalidJobStateError(job.status, JobStatus.FAILED)

    if lease_token is not None and job.lease_token != lease_token:
        raise LeaseNotFoundError(f"Lease for job {job_id} not found or token mismatch")

    job.attempts += 1
    job.error_message = error
    job.updated_at = now
    job.locked_until = None
    job.lease_token = None

    next_event: JobEvent
    if has_attempts_remaining(job.attempts, job.max_attempts):
        if retry_delay_seconds is not None:
            job.scheduled_for = now + timedelta(seconds=retry_delay_seconds)
        else:
            job.scheduled_for = calculate_next_run(
                job.attempts,
                base_delay_seconds=settings.RETRY_BASE_DELAY_SECONDS,
                max_delay_seconds=settings.RETRY_MAX_DELAY_SECONDS,
                jitter=settings.RETRY_JITTER,
                now=now,
            )
        job.status = JobStatus.PENDING
        job.notified_at = None
        JOB_FAILURES.labels(job_type=job.job_type, type="retryable").inc()
        next_event = JobEvent.RETRIED
    else:
        job.status = JobStatus.FAILED
        job.completed_at = now
        JOB_FAILURES.labels(job_type=job.job_type, type="final").inc()
        next_event = JobEvent.FAILED

    session.add(JobEventLog(
        job_id=job.id,
        event_type=next_event,
        timestamp=now,
        meta={
            "error": error,
            "attempts": job.attempts,
            "max": job.max_attempts,
            "lease_token": str(lease_token) if lease_token else None
        }
    ))

    await session.flush()
    return job
