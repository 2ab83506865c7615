from datetime import datetime, timedelta
from typing import Optional
from uuid import uuid4
import logging

from sqlalchemy import select, update, and_, or_, case, literal
from sqlalchemy.ext.asyncio import AsyncSession

from orchestrator.api.v1.metrics import JOB_CLAIMS, JOB_START_DELAY
from orchestrator.db.models import Job, JobEventLog
from orchestrator.domain.states import JobStatus, JobEvent
from orchestrator.settings import settings
from orchestrator.utils.time import utcnow, as_utc

logger = logging.getLogger(__name__)

# Rows lost to a concurrent claimer between SELECT and UPDATE are retried this often.
MAX_CLAIM_RACES = 3

def claimable_clause(now: datetime):
    """
    Eligible rows:
      * pending
      * failed with attempts remaining
      * processing whose lease has expired (crash recovery); the lost run
        counts as an attempt, so rows on their last attempt are left to the reaper
    and in every case due now and not under a live lease.
    """
    lease_free = or_(Job.locked_until.is_(None), Job.locked_until <= now)
    return and_(
        or_(
            Job.status == JobStatus.PENDING,
            and_(Job.status == JobStatus.FAILED, Job.attempts < Job.max_attempts),
            and_(
                Job.status == JobStatus.PROCESSING,
                Job.locked_until.is_not(None),
                Job.attempts + 1 < Job.max_attempts,
            ),
        ),
        Job.scheduled_for <= now,
        lease_free,
    )

def _build_claim_query(now: datetime, channel: Optional[str], fallback: bool):
    stmt = select(Job.id, Job.status).where(claimable_clause(now))

    order_by = []
    if channel is not None:
        if fallback:
            order_by.append(case((Job.channel == channel, literal(0)), else_=literal(1)))
        else:
            stmt = stmt.where(Job.channel == channel)

    order_by.extend([
        # Stale leases first; unleased rows after
        Job.locked_until.asc().nulls_last(),
        Job.scheduled_for.asc(),
        Job.priority.desc(),
        Job.created_at.asc(),
    ])
    return stmt.order_by(*order_by).limit(1).with_for_update(skip_locked=True)

async def claim_next(
    session: AsyncSession,
    worker_id: str,
    channel: Optional[str] = None,
    lease_duration: Optional[int] = None,
    fallback: bool = False
) -> Optional[Job]:
    """
    Atomically claims the best-ranked eligible job for `worker_id`.

    With a channel, only that channel is considered unless `fallback` is set,
    in which case matching rows rank first and other channels are used when
    the lane is empty.

    The row is picked with FOR UPDATE SKIP LOCKED and flipped with an UPDATE
    that re-checks eligibility, so two claimers can never both win it.
    Returns None when nothing is claimable. The caller commits.
    """
    duration = lease_duration if lease_duration is not None else settings.DEFAULT_LEASE_TIMEOUT_SECONDS

    for _ in range(MAX_CLAIM_RACES):
        now = utcnow()
        row = (await session.execute(_build_claim_query(now, channel, fallback))).first()
        if row is None:
            JOB_CLAIMS.labels(channel=channel or "any", outcome="empty").inc()
            return None

        job_id, previous_status = row
        reclaim = previous_status == JobStatus.PROCESSING
        lease_token = uuid4()
        expires_at = now + timedelta(seconds=duration)

        values = dict(
            status=JobStatus.PROCESSING,
            started_at=now,
            locked_until=expires_at,
            worker_id=worker_id,
            lease_token=lease_token,
            updated_at=now,
        )
        if reclaim:
            values["attempts"] = Job.attempts + 1

        stmt = (
            update(Job)
            .where(Job.id == job_id, claimable_clause(now))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        if result.rowcount != 1:
            # Lost the row to a concurrent claimer; pick again
            continue

        job = await session.get(Job, job_id, populate_existing=True)

        session.add(JobEventLog(
            job_id=job.id,
            event_type=JobEvent.RECLAIMED if reclaim else JobEvent.CLAIMED,
            timestamp=now,
            meta={
                "worker_id": worker_id,
                "lease_token": str(lease_token),
                "locked_until": expires_at.isoformat(),
                "attempts": job.attempts,
            }
        ))
        await session.flush()

        JOB_CLAIMS.labels(channel=channel or "any", outcome="reclaimed" if reclaim else "claimed").inc()
        delay = (now - as_utc(job.scheduled_for)).total_seconds()
        if delay >= 0:
            JOB_START_DELAY.observe(delay)
        if reclaim:
            logger.warning(
                "Job %s reclaimed by %s after lease expiry", job.id, worker_id,
                extra={"job_id": job.id, "worker_id": worker_id}
            )

        return job

    JOB_CLAIMS.labels(channel=channel or "any", outcome="contended").inc()
    return None
