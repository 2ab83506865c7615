from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from orchestrator.api.v1.metrics import QUEUE_DEPTH, JOBS_INFLIGHT, SLA_BREACHES
from orchestrator.commands.requeue_expired import requeue_expired_jobs
from orchestrator.db.models import Job
from orchestrator.domain.sla import SLA_BREACHED, SlaThresholds
from orchestrator.domain.states import JobStatus
from orchestrator.queries.jobs import sla_clause
from orchestrator.utils.time import utcnow

async def run_leader_tasks(session: AsyncSession) -> int:
    """
    Maintenance that must run on one instance only:
    requeue (or finally fail) processing jobs whose lease expired.
    """
    recovered = await requeue_expired_jobs(session)
    await session.commit()
    return recovered

async def run_metrics_tasks(session: AsyncSession) -> None:
    """
    Refreshes queue gauges from the database. Runs on every instance so each
    /metrics endpoint reports current values.
    """
    now = utcnow()

    q_inflight = select(func.count(Job.id)).where(
        Job.status == JobStatus.PROCESSING,
        Job.locked_until > now
    )
    JOBS_INFLIGHT.set((await session.execute(q_inflight)).scalar() or 0)

    q_depth = (
        select(Job.channel, func.count(Job.id))
        .where(Job.status == JobStatus.PENDING)
        .group_by(Job.channel)
    )
    rows = (await session.execute(q_depth)).all()
    # Lanes that drained since the last tick must drop to zero
    QUEUE_DEPTH.clear()
    for channel, count in rows:
        QUEUE_DEPTH.labels(channel=channel or "default").set(count)

    thresholds = SlaThresholds.from_settings()
    q_breaches = (
        select(Job.status, func.count(Job.id))
        .where(sla_clause(SLA_BREACHED, now, thresholds))
        .group_by(Job.status)
    )
    breaches = {str(status): count for status, count in (await session.execute(q_breaches)).all()}
    for status in (JobStatus.PENDING, JobStatus.PROCESSING):
        SLA_BREACHES.labels(status=status).set(breaches.get(status, 0))

    await session.commit()
