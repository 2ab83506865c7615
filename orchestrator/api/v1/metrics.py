from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter, Response

router = APIRouter()

# Queue
QUEUE_DEPTH = Gauge('job_queue_depth', 'Number of jobs in PENDING state', ['channel'])
JOBS_INFLIGHT = Gauge("jobs_inflight", "Number of jobs currently processing under a live lease")
SLA_BREACHES = Gauge('job_sla_breaches', 'Active jobs currently past their SLA window', ['status'])

JOBS_ENQUEUED = Counter('jobs_enqueued_total', 'Jobs inserted into the queue', ['job_type'])
DEDUP_HITS = Counter(
    'job_dedup_hits_total',
    'enqueue_if_absent calls that found an active job',
    ['job_type', 'source']  # source=existing|unique_index
)
JOB_CLAIMS = Counter(
    'job_claims_total',
    'Claim attempts by outcome',
    ['channel', 'outcome']  # claimed|reclaimed|empty|contended
)
JOB_FAILURES = Counter('job_failures_total', 'Total job failures', ['job_type', 'type'])  # type=retryable|final
JOB_COMPLETE_TOTAL = Counter('job_completed_total', 'Jobs completed successfully', ['job_type'])

JOB_START_DELAY = Histogram('job_start_delay_seconds', 'Time from scheduled_for to claim', buckets=[0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 300.0])
JOB_DURATION = Histogram('job_duration_seconds', 'Time from claim to completion', ['job_type'], buckets=[1.0, 5.0, 10.0, 60.0, 120.0, 600.0])

REAPER_RECOVERED_JOBS = Counter(
    "reaper_recovered_jobs_total",
    "Jobs with expired leases handled by the reaper",
    ["outcome"]  # requeued|failed
)

# Lifecycle / decisions
LIFECYCLE_TRANSITIONS = Counter('domain_lifecycle_transitions_total', 'Applied lifecycle transitions', ['from_state', 'to_state'])
DECISIONS_APPLIED = Counter(
    'acquisition_decisions_total',
    'Acquisition decisions by outcome',
    ['decision', 'mode', 'outcome']  # mode=single|bulk; outcome=updated|rejected|failed|aborted
)

# Worker pool wake-up
NOTIFICATIONS_SENT = Counter('worker_pool_notifications_total', 'Worker pool notifications by result', ['source', 'result'])
RECONCILED_JOBS = Counter('reconciler_notified_jobs_total', 'Jobs re-announced by the notification reconciler')
MANUAL_RETRIES = Counter('job_manual_retries_total', 'Failed jobs reset by an operator retry', ['outcome'])  # retried|skipped

LEADER_STATUS = Gauge(
    "instance_leader_status",
    "Whether this instance is currently the leader (1 for leader, 0 for follower)"
)

@router.get("/metrics")
async def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
