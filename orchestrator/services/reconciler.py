import asyncio
import logging
from datetime import timedelta
from typing import Optional, Sequence
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from orchestrator.api.v1.metrics import NOTIFICATIONS_SENT, RECONCILED_JOBS
from orchestrator.db.models import Job
from orchestrator.domain.states import JobStatus
from orchestrator.services.notifier import WorkerPoolNotifier, build_notifier
from orchestrator.settings import settings
from orchestrator.utils.time import utcnow

logger = logging.getLogger(__name__)

async def mark_notified(session: AsyncSession, job_ids: Sequence[UUID]) -> None:
    if not job_ids:
        return
    await session.execute(
        update(Job)
        .where(Job.id.in_(list(job_ids)), Job.notified_at.is_(None))
        .values(notified_at=utcnow())
        .execution_options(synchronize_session=False)
    )

class NotificationReconciler:
    """
    Periodically re-announces due pending jobs whose post-commit wake-up never
    happened (notifier down, process died between commit and notify, or the
    job was put back to pending by a retry).
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        notifier: Optional[WorkerPoolNotifier] = None,
        interval: Optional[float] = None,
        grace_seconds: Optional[int] = None,
        batch_size: Optional[int] = None,
    ):
        if session_factory is None:
            from orchestrator.db.session import AsyncSessionLocal
            session_factory = AsyncSessionLocal
        self.session_factory = session_factory
        self.notifier = notifier or build_notifier()
        self.interval = interval if interval is not None else settings.RECONCILE_INTERVAL_SECONDS
        self.grace_seconds = grace_seconds if grace_seconds is not None else settings.RECONCILE_GRACE_SECONDS
        self.batch_size = batch_size or settings.RECONCILE_BATCH_SIZE
        self.running = False
        self._task = None

    async def start(self):
        self.running = True
        self._task = asyncio.create_task(self.run_loop())
        logger.info("NotificationReconciler started.")

    async def stop(self):
        self.running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("NotificationReconciler stopped.")

    async def run_loop(self):
        while self.running:
            try:
                await self.process_batch()
            except Exception as e:
                logger.error(f"Error in NotificationReconciler: {e}", exc_info=True)
            await asyncio.sleep(self.interval)

    async def process_batch(self) -> int:
        """Returns the number of jobs successfully re-announced."""
        cutoff = utcnow() - timedelta(seconds=self.grace_seconds)

        # Read in its own short transaction; no network calls while it is open.
        async with self.session_factory() as session:
            async with session.begin():
                stmt = (
                    select(Job.id)
                    .where(
                        Job.status == JobStatus.PENDING,
                        Job.notified_at.is_(None),
                        Job.scheduled_for <= cutoff,
                    )
                    .order_by(Job.scheduled_for.asc())
                    .limit(self.batch_size)
                )
                job_ids = list((await session.execute(stmt)).scalars().all())

        if not job_ids:
            return 0

        if not await self.notifier.notify(job_ids):
            NOTIFICATIONS_SENT.labels(source="reconciler", result="failed").inc()
            logger.warning("Reconciler could not notify worker pool about %d jobs", len(job_ids))
            return 0

        NOTIFICATIONS_SENT.labels(source="reconciler", result="ok").inc()
        async with self.session_factory() as session:
            async with session.begin():
                await mark_notified(session, job_ids)

        RECONCILED_JOBS.inc(len(job_ids))
        logger.info("Reconciler re-announced %d pending jobs", len(job_ids))
        return len(job_ids)
