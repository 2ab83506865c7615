from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from typing import Any, Optional

from orchestrator.domain.states import JobStatus
from orchestrator.settings import settings
from orchestrator.utils.time import as_utc

SLA_OK = "ok"
SLA_BREACHED = "breached"

@dataclass(frozen=True)
class SlaThresholds:
    pending_minutes: int = 20
    processing_minutes: int = 30
    pending_backlog: int = 200
    error_rate_pct: float = 20.0
    worker_idle_minutes: int = 30

    @classmethod
    def from_settings(cls) -> "SlaThresholds":
        return cls(
            pending_minutes=settings.QUEUE_PENDING_SLA_MINUTES,
            processing_minutes=settings.QUEUE_PROCESSING_SLA_MINUTES,
            pending_backlog=settings.QUEUE_PENDING_BACKLOG_THRESHOLD,
            error_rate_pct=settings.QUEUE_ERROR_RATE_THRESHOLD_PCT,
            worker_idle_minutes=settings.QUEUE_WORKER_IDLE_MINUTES,
        )

    @property
    def pending_window(self) -> timedelta:
        return timedelta(minutes=self.pending_minutes)

    @property
    def processing_window(self) -> timedelta:
        return timedelta(minutes=self.processing_minutes)

def classify_job(
    status: str,
    created_at: Optional[datetime],
    started_at: Optional[datetime],
    now: datetime,
    thresholds: SlaThresholds,
) -> str:
    """
    A pending job breaches once it has waited longer than the pending window
    since creation; a processing job once it has run longer than the processing
    window, measured from started_at (or created_at if it never recorded a start).
    Other statuses are never in breach.
    """
    if status == JobStatus.PENDING and created_at is not None:
        if as_utc(created_at) < now - thresholds.pending_window:
            return SLA_BREACHED
    elif status == JobStatus.PROCESSING:
        reference = as_utc(started_at) or as_utc(created_at)
        if reference is not None and reference < now - thresholds.processing_window:
            return SLA_BREACHED
    return SLA_OK

@dataclass(frozen=True)
class QueueSloAlert:
    code: str          # pending_age | error_rate | pending_backlog | worker_idle
    severity: str      # warning | critical
    message: str
    value: float
    threshold: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

def _severity(value: float, threshold: float) -> str:
    return "critical" if value > threshold * 2 else "warning"

def build_queue_slo_alerts(
    oldest_pending_age_seconds: Optional[float],
    error_rate_24h_pct: float,
    pending: int,
    latest_worker_activity_age_seconds: Optional[float],
    thresholds: SlaThresholds,
) -> list[QueueSloAlert]:
    alerts: list[QueueSloAlert] = []

    pending_age_threshold = thresholds.pending_minutes * 60
    if oldest_pending_age_seconds is not None:
        oldest = max(0.0, oldest_pending_age_seconds)
        if oldest > pending_age_threshold:
            alerts.append(QueueSloAlert(
                code="pending_age",
                severity=_severity(oldest, pending_age_threshold),
                message="Oldest pending job age exceeded SLO threshold",
                value=oldest,
                threshold=pending_age_threshold,
            ))

    error_rate = max(0.0, error_rate_24h_pct)
    if error_rate > thresholds.error_rate_pct:
        alerts.append(QueueSloAlert(
            code="error_rate",
            severity=_severity(error_rate, thresholds.error_rate_pct),
            message="24h queue error rate exceeded SLO threshold",
            value=error_rate,
            threshold=thresholds.error_rate_pct,
        ))

    pending = max(0, pending)
    if pending > thresholds.pending_backlog:
        alerts.append(QueueSloAlert(
            code="pending_backlog",
            severity=_severity(pending, thresholds.pending_backlog),
            message="Pending queue backlog exceeded SLO threshold",
            value=pending,
            threshold=thresholds.pending_backlog,
        ))

    idle_threshold = thresholds.worker_idle_minutes * 60
    if pending > 0 and latest_worker_activity_age_seconds is not None:
        idle = max(0.0, latest_worker_activity_age_seconds)
        if idle > idle_threshold:
            # Work is waiting and nobody is picking it up
            alerts.append(QueueSloAlert(
                code="worker_idle",
                severity="critical",
                message="Worker idle while queue has pending jobs",
                value=idle,
                threshold=idle_threshold,
            ))

    return alerts
