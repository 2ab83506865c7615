import logging
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from orchestrator.api.v1.metrics import JOBS_ENQUEUED, DEDUP_HITS
from orchestrator.db.models import Job, JobEventLog
from orchestrator.domain.errors import DuplicateJobConflict
from orchestrator.domain.models import JobSpec
from orchestrator.domain.states import ACTIVE_JOB_STATUSES, JobStatus, JobEvent
from orchestrator.utils.locking import acquire_xact_lock
from orchestrator.utils.time import utcnow

logger = logging.getLogger(__name__)

def _build_job(spec: JobSpec) -> Job:
    now = utcnow()
    return Job(
        job_type=spec.job_type,
        status=JobStatus.PENDING,
        payload=dict(spec.payload),
        priority=spec.priority,
        max_attempts=spec.max_attempts,
        channel=spec.channel,
        entity_key=spec.entity_key,
        domain_id=spec.domain_id,
        scheduled_for=spec.scheduled_for or now,
        attempts=0,
        created_at=now,
        updated_at=now,
    )

async def _insert_job(session: AsyncSession, spec: JobSpec) -> UUID:
    job = _build_job(spec)
    session.add(job)
    await session.flush()

    session.add(JobEventLog(
        job_id=job.id,
        event_type=JobEvent.CREATED,
        timestamp=job.created_at,
        meta={"job_type": job.job_type, "entity_key": job.entity_key}
    ))
    await session.flush()

    JOBS_ENQUEUED.labels(job_type=job.job_type).inc()
    return job.id

async def enqueue(session: AsyncSession, spec: JobSpec) -> UUID:
    """
    Inserts a pending job in the caller's transaction and returns its id.
    No dedup: use enqueue_if_absent for entity-scoped work.

    Jobs with an entity_key are inserted in a savepoint; if an active job of the
    same type already holds that entity, DuplicateJobConflict is raised and the
    caller's transaction stays usable.
    """
    if spec.entity_key is None:
        return await _insert_job(session, spec)

    try:
        async with session.begin_nested():
            return await _insert_job(session, spec)
    except IntegrityError as exc:
        raise DuplicateJobConflict(spec.job_type, spec.entity_key) from exc

async def find_active_job(session: AsyncSession, job_type: str, entity_key: str) -> Optional[Job]:
    stmt = select(Job).where(
        Job.job_type == job_type,
        Job.entity_key == entity_key,
        Job.status.in_(ACTIVE_JOB_STATUSES)
    ).limit(1)
    return await session.scalar(stmt)

async def insert_unique_job(session: AsyncSession, spec: JobSpec) -> Optional[UUID]:
    """
    A violation of the active-entity unique index means a concurrent enqueuer
    won; that is reported as None rather than an error.
    """
    try:
        job_id = await enqueue(session, spec)
    except DuplicateJobConflict:
        DEDUP_HITS.labels(job_type=spec.job_type, source="unique_index").inc()
        logger.info(
            "Active %s job for %s already exists (unique index)", spec.job_type, spec.entity_key
        )
        return None
    return job_id

async def enqueue_if_absent(
    session: AsyncSession,
    spec: JobSpec,
    dedup_key: Optional[str] = None
) -> Optional[UUID]:
    """
    Creates the job unless an active (pending/processing) job of the same type
    already exists for the same entity. Returns the new id, or None when one
    already exists.

    Steps, all inside the caller's transaction:
      1. transaction-scoped lock on the dedup key
      2. existence check for an active job with the same job_type/entity_key
      3. insert in a savepoint, with the partial unique index as backstop
    """
    if spec.entity_key is None:
        raise ValueError("enqueue_if_absent requires spec.entity_key")

    key = dedup_key or spec.dedup_key()
    await acquire_xact_lock(session, key)

    existing = await find_active_job(session, spec.job_type, spec.entity_key)
    if existing is not None:
        DEDUP_HITS.labels(job_type=spec.job_type, source="existing").inc()
        logger.debug("Skipping %s: active job %s exists", key, existing.id)
        return None

    return await insert_unique_job(session, spec)
