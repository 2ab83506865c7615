from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from orchestrator.db.models import Job, JobEventLog
from orchestrator.domain.states import JobStatus, JobEvent
from orchestrator.domain.errors import LeaseNotFoundError, LeaseExpiredError
from orchestrator.settings import settings
from orchestrator.utils.time import utcnow, as_utc

async def heartbeat(
    session: AsyncSession,
    job_id: UUID,
    lease_token: UUID,
    extend_seconds: Optional[int] = None
) -> datetime:
    """
    Renews the lease for a job.
    Raises if the lease is gone, belongs to another claimer or has already expired.
    Returns the new lease expiry.
    """
    now = utcnow()
    extend = extend_seconds if extend_seconds is not None else settings.HEARTBEAT_EXTEND_SECONDS

    stmt = select(Job).where(
        Job.id == job_id,
        Job.status == JobStatus.PROCESSING,
        Job.lease_token == lease_token
    ).with_for_update()
    job = await session.scalar(stmt)

    if not job:
        # Completed, failed, requeued or reclaimed by another worker
        raise LeaseNotFoundError(f"Lease for job {job_id} not found or token mismatch")

    locked_until = as_utc(job.locked_until)
    # Expired at locked_until itself, matching claimable_clause
    if locked_until is None or locked_until <= now:
        raise LeaseExpiredError(f"Lease for job {job_id} expired at {locked_until}")

    new_expires_at = now + timedelta(seconds=extend)
    job.locked_until = new_expires_at
    job.updated_at = now

    session.add(JobEventLog(
        job_id=job.id,
        event_type=JobEvent.LEASE_RENEWED,
        timestamp=now,
        meta={"worker_id": job.worker_id, "locked_until": new_expires_at.isoformat()}
    ))
    await session.flush()
    return new_expires_at
