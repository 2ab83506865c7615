import logging

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from orchestrator.api.v1.metrics import MANUAL_RETRIES
from orchestrator.commands.enqueue_job import find_active_job
from orchestrator.db.models import Job, JobEventLog
from orchestrator.domain.states import JobStatus, JobEvent
from orchestrator.utils.time import utcnow

logger = logging.getLogger(__name__)

async def retry_failed_jobs(session: AsyncSession, limit: int = 10) -> int:
    """
    Operator retry: puts terminally failed jobs back to PENDING with a fresh
    attempt budget, due now. Oldest failures go first.

    A job whose entity already has an active job of the same type is left
    failed, so the retry never creates a second active job for it.
    """
    now = utcnow()

    stmt = select(Job).where(
        Job.status == JobStatus.FAILED
    ).order_by(Job.updated_at.asc()).limit(limit).with_for_update(skip_locked=True)
    failed_jobs = (await session.execute(stmt)).scalars().all()

    retried = 0
    for job in failed_jobs:
        job_id, entity_key = job.id, job.entity_key
        if entity_key is not None and await find_active_job(session, job.job_type, entity_key):
            MANUAL_RETRIES.labels(outcome="skipped").inc()
            logger.info(
                "Not retrying job %s: %s already has an active job", job_id, entity_key,
                extra={"job_id": job_id}
            )
            continue

        try:
            async with session.begin_nested():
                await session.execute(
                    update(Job)
                    .where(Job.id == job_id, Job.status == JobStatus.FAILED)
                    .values(
                        status=JobStatus.PENDING,
                        attempts=0,
                        error_message=None,
                        scheduled_for=now,
                        locked_until=None,
                        lease_token=None,
                        worker_id=None,
                        completed_at=None,
                        notified_at=None,
                        updated_at=now,
                    )
                )
                session.add(JobEventLog(
                    job_id=job_id,
                    event_type=JobEvent.RETRIED,
                    timestamp=now,
                    meta={"reason": "manual_retry"}
                ))
                await session.flush()
        except IntegrityError:
            # Active job for the same entity inserted concurrently
            MANUAL_RETRIES.labels(outcome="skipped").inc()
            continue

        MANUAL_RETRIES.labels(outcome="retried").inc()
        retried += 1

    if retried:
        logger.info("Operator retry reset %d failed jobs", retried)
    return retried
