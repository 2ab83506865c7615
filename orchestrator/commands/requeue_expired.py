import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from orchestrator.api.v1.metrics import REAPER_RECOVERED_JOBS
from orchestrator.db.models import Job, JobEventLog
from orchestrator.domain.states import JobStatus, JobEvent
from orchestrator.utils.time import utcnow

logger = logging.getLogger(__name__)

LEASE_EXPIRED_ERROR = "Lease expired (worker crash?)"

async def requeue_expired_jobs(session: AsyncSession, limit: int = 100) -> int:
    """
    Finds processing jobs whose lease expired, clears the lease and puts them
    back to PENDING. The lost run counts as an attempt; exhausted jobs end in
    FAILED instead. Returns the number of jobs handled.
    """
    now = utcnow()

    stmt = select(Job).where(
        Job.status == JobStatus.PROCESSING,
        Job.locked_until.is_not(None),
        Job.locked_until <= now
    ).order_by(Job.locked_until.asc()).limit(limit).with_for_update(skip_locked=True)

    expired_jobs = (await session.execute(stmt)).scalars().all()
    if not expired_jobs:
        return 0

    for job in expired_jobs:
        worker_id = job.worker_id
        job.attempts += 1
        job.error_message = LEASE_EXPIRED_ERROR
        job.updated_at = now
        job.locked_until = None
        job.lease_token = None

        if job.attempts >= job.max_attempts:
            job.status = JobStatus.FAILED
            job.completed_at = now
            event_type = JobEvent.FAILED
            outcome = "failed"
        else:
            # Crashed workers are retried right away
            job.status = JobStatus.PENDING
            job.notified_at = None
            job.scheduled_for = now
            event_type = JobEvent.RETRIED
            outcome = "requeued"

        REAPER_RECOVERED_JOBS.labels(outcome=outcome).inc()
        session.add(JobEventLog(
            job_id=job.id,
            event_type=event_type,
            timestamp=now,
            meta={"reason": "lease_expired", "worker_id": worker_id, "attempts": job.attempts}
        ))
        logger.debug(
            "Job %s lease held by %s expired; %s", job.id, worker_id, outcome,
            extra={"job_id": job.id, "worker_id": worker_id}
        )

    logger.info("Reaper recovered %d jobs with expired leases", len(expired_jobs))
    await session.flush()
    return len(expired_jobs)
