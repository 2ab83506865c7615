from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional, Sequence
from uuid import UUID

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from orchestrator.db.models import Job
from orchestrator.domain.sla import SLA_BREACHED, SLA_OK, SlaThresholds, build_queue_slo_alerts
from orchestrator.domain.states import JobStatus
from orchestrator.utils.time import utcnow, as_utc

DEFAULT_LIMIT = 1000
MAX_LIMIT = 5000
STALLED_AFTER = timedelta(minutes=20)

PRESETS = ("failures", "stalled", "deploy", "acquisition")
ACQUISITION_JOB_TYPES = ("ingest_listings", "enrich_candidate", "score_candidate", "create_bid_plan")

@dataclass
class JobFilter:
    status: Optional[JobStatus] = None
    sla: str = "all"                       # all | ok | breached
    job_types: Sequence[str] = field(default_factory=tuple)
    channel: Optional[str] = None
    domain_id: Optional[UUID] = None
    preset: Optional[str] = None
    q: Optional[str] = None
    limit: int = DEFAULT_LIMIT

    def clamped_limit(self) -> int:
        return max(1, min(self.limit, MAX_LIMIT))

def sla_clause(sla: str, now: datetime, thresholds: SlaThresholds):
    pending_cutoff = now - thresholds.pending_window
    processing_cutoff = now - thresholds.processing_window
    processing_since = func.coalesce(Job.started_at, Job.created_at)

    if sla == SLA_BREACHED:
        return or_(
            and_(Job.status == JobStatus.PENDING, Job.created_at <= pending_cutoff),
            and_(Job.status == JobStatus.PROCESSING, processing_since <= processing_cutoff),
        )
    if sla == SLA_OK:
        return or_(
            and_(Job.status == JobStatus.PENDING, Job.created_at > pending_cutoff),
            and_(Job.status == JobStatus.PROCESSING, processing_since > processing_cutoff),
        )
    return None

def preset_clause(preset: Optional[str], now: datetime):
    if preset == "failures":
        return Job.status == JobStatus.FAILED
    if preset == "stalled":
        return and_(
            Job.status == JobStatus.PENDING,
            Job.scheduled_for <= now,
            Job.created_at <= now - STALLED_AFTER,
        )
    if preset == "deploy":
        return Job.job_type == "deploy"
    if preset == "acquisition":
        return Job.job_type.in_(ACQUISITION_JOB_TYPES)
    return None

def build_list_query(job_filter: JobFilter, now: datetime, thresholds: SlaThresholds):
    clauses = [
        preset_clause(job_filter.preset, now),
        sla_clause(job_filter.sla, now, thresholds),
    ]
    if job_filter.status is not None:
        clauses.append(Job.status == job_filter.status)
    if job_filter.job_types:
        clauses.append(Job.job_type.in_(list(job_filter.job_types)))
    if job_filter.channel:
        clauses.append(Job.channel == job_filter.channel)
    if job_filter.domain_id is not None:
        clauses.append(Job.domain_id == job_filter.domain_id)
    if job_filter.q:
        pattern = f"%{job_filter.q.strip()}%"
        clauses.append(or_(
            Job.job_type.ilike(pattern),
            Job.entity_key.ilike(pattern),
            Job.channel.ilike(pattern),
            Job.error_message.ilike(pattern),
        ))

    stmt = select(Job).where(*[c for c in clauses if c is not None])
    return stmt.order_by(Job.created_at.desc()).limit(job_filter.clamped_limit())

async def list_jobs(
    session: AsyncSession,
    job_filter: Optional[JobFilter] = None,
    thresholds: Optional[SlaThresholds] = None
) -> list[Job]:
    """Read-only export of jobs for operational tooling, newest first."""
    stmt = build_list_query(job_filter or JobFilter(), utcnow(), thresholds or SlaThresholds.from_settings())
    return list((await session.execute(stmt)).scalars().all())

async def get_queue_stats(session: AsyncSession) -> dict[str, int]:
    stats = {str(status): 0 for status in JobStatus}
    rows = (await session.execute(
        select(Job.status, func.count(Job.id)).group_by(Job.status)
    )).all()
    for status, count in rows:
        stats[str(status)] = count
    stats["total"] = sum(stats[str(s)] for s in JobStatus)
    return stats

async def get_queue_health(
    session: AsyncSession,
    thresholds: Optional[SlaThresholds] = None
) -> dict[str, Any]:
    thresholds = thresholds or SlaThresholds.from_settings()
    now = utcnow()
    stats = await get_queue_stats(session)

    oldest_pending = as_utc(await session.scalar(
        select(func.min(Job.created_at)).where(Job.status == JobStatus.PENDING)
    ))
    oldest_pending_age = (now - oldest_pending).total_seconds() if oldest_pending else None

    since = now - timedelta(hours=24)
    finished = (await session.execute(
        select(Job.status, func.count(Job.id))
        .where(Job.completed_at >= since, Job.status.in_((JobStatus.COMPLETED, JobStatus.FAILED)))
        .group_by(Job.status)
    )).all()
    finished_counts = {str(status): count for status, count in finished}
    total_finished = sum(finished_counts.values())
    error_rate = (finished_counts.get(JobStatus.FAILED, 0) * 100.0 / total_finished) if total_finished else 0.0

    throughput = await session.scalar(
        select(func.count(Job.id)).where(
            Job.status == JobStatus.COMPLETED, Job.completed_at >= now - timedelta(hours=1)
        )
    )
    # Averaged in Python; interval arithmetic is backend-specific
    spans = (await session.execute(
        select(Job.started_at, Job.completed_at).where(
            Job.status == JobStatus.COMPLETED,
            Job.completed_at >= since,
            Job.started_at.is_not(None),
        )
    )).all()
    durations = [(as_utc(done) - as_utc(started)).total_seconds() for started, done in spans]
    avg_processing = sum(durations) / len(durations) if durations else None

    latest_start = as_utc(await session.scalar(select(func.max(Job.started_at))))
    latest_finish = as_utc(await session.scalar(select(func.max(Job.completed_at))))
    activity = [t for t in (latest_start, latest_finish) if t is not None]
    latest_activity = max(activity) if activity else None
    idle_age = (now - latest_activity).total_seconds() if latest_activity else None

    breached = await session.scalar(
        select(func.count(Job.id)).where(sla_clause(SLA_BREACHED, now, thresholds))
    )

    alerts = build_queue_slo_alerts(
        oldest_pending_age_seconds=oldest_pending_age,
        error_rate_24h_pct=error_rate,
        pending=stats[JobStatus.PENDING],
        latest_worker_activity_age_seconds=idle_age,
        thresholds=thresholds,
    )
    return {
        "stats": stats,
        "oldest_pending_age_seconds": oldest_pending_age,
        "error_rate_24h_pct": round(error_rate, 2),
        "throughput_per_hour": throughput or 0,
        "avg_processing_seconds": round(avg_processing, 2) if avg_processing is not None else None,
        "latest_worker_activity_at": latest_activity.isoformat() if latest_activity else None,
        "sla_breached": breached or 0,
        "alerts": [a.to_dict() for a in alerts],
    }
