import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import update

from orchestrator.commands.enqueue_job import enqueue
from orchestrator.commands.lease_job import claim_next
from orchestrator.commands.requeue_expired import LEASE_EXPIRED_ERROR, requeue_expired_jobs
from orchestrator.db.models import Job
from orchestrator.domain.models import JobSpec
from orchestrator.domain.states import JobStatus
from orchestrator.scheduler.service import SchedulerService
from orchestrator.services.reconciler import NotificationReconciler
from orchestrator.utils.time import utcnow
from tests.integration.seed import RecordingNotifier


async def _enqueue(session_factory, **kwargs):
    async with session_factory() as session:
        async with session.begin():
            return await enqueue(session, JobSpec(job_type="score_candidate", **kwargs))


async def _claim_and_expire(session_factory, job_id) -> None:
    async with session_factory() as session:
        await claim_next(session, "worker-crashed")
        await session.commit()
    async with session_factory() as session:
        async with session.begin():
            await session.execute(
                update(Job).where(Job.id == job_id).values(locked_until=utcnow() - timedelta(seconds=10))
            )


async def _get(session_factory, job_id) -> Job:
    async with session_factory() as session:
        return await session.get(Job, job_id)


@pytest.mark.integration
def test_reaper_requeues_expired_lease(session_factory) -> None:
    async def _run() -> None:
        job_id = await _enqueue(session_factory, max_attempts=3)
        await _claim_and_expire(session_factory, job_id)

        async with session_factory() as session:
            assert await requeue_expired_jobs(session) == 1
            await session.commit()

        job = await _get(session_factory, job_id)
        assert job.status == JobStatus.PENDING
        assert job.attempts == 1
        assert job.error_message == LEASE_EXPIRED_ERROR
        assert job.locked_until is None
        assert job.lease_token is None
        assert job.notified_at is None

    asyncio.run(_run())


@pytest.mark.integration
def test_reaper_fails_job_on_last_attempt(session_factory) -> None:
    async def _run() -> None:
        job_id = await _enqueue(session_factory, max_attempts=1)
        await _claim_and_expire(session_factory, job_id)

        # Last attempt is not reclaimable by claimers; only the reaper settles it
        async with session_factory() as session:
            assert await claim_next(session, "worker-2") is None

        async with session_factory() as session:
            assert await requeue_expired_jobs(session) == 1
            await session.commit()

        job = await _get(session_factory, job_id)
        assert job.status == JobStatus.FAILED
        assert job.completed_at is not None

    asyncio.run(_run())


@pytest.mark.integration
def test_reaper_ignores_live_leases(session_factory) -> None:
    async def _run() -> None:
        await _enqueue(session_factory)
        async with session_factory() as session:
            await claim_next(session, "worker-1")
            await session.commit()

        async with session_factory() as session:
            assert await requeue_expired_jobs(session) == 0

    asyncio.run(_run())


@pytest.mark.integration
def test_scheduler_tick_runs_reaper_as_leader(session_factory) -> None:
    async def _run() -> None:
        job_id = await _enqueue(session_factory)
        await _claim_and_expire(session_factory, job_id)

        scheduler = SchedulerService(session_factory=session_factory, interval=60)
        lock_session = session_factory()
        try:
            await scheduler.tick(lock_session)
        finally:
            await lock_session.close()

        assert scheduler.is_leader is True
        assert (await _get(session_factory, job_id)).status == JobStatus.PENDING

    asyncio.run(_run())


@pytest.mark.integration
def test_scheduler_start_stop(session_factory) -> None:
    async def _run() -> None:
        scheduler = SchedulerService(session_factory=session_factory, interval=0.01)
        await scheduler.start()
        await asyncio.sleep(0.2)
        await scheduler.stop()
        assert scheduler.is_leader is True

    asyncio.run(_run())


@pytest.mark.integration
def test_reconciler_announces_unnotified_due_jobs(session_factory) -> None:
    async def _run() -> None:
        due = await _enqueue(session_factory, scheduled_for=utcnow() - timedelta(minutes=5))
        fresh = await _enqueue(session_factory)
        future = await _enqueue(session_factory, scheduled_for=utcnow() + timedelta(hours=1))

        notifier = RecordingNotifier()
        reconciler = NotificationReconciler(session_factory=session_factory, notifier=notifier, grace_seconds=60)

        assert await reconciler.process_batch() == 1
        assert notifier.notified_ids == [due]
        assert (await _get(session_factory, due)).notified_at is not None
        assert (await _get(session_factory, fresh)).notified_at is None
        assert (await _get(session_factory, future)).notified_at is None

        # Already announced jobs are not repeated
        assert await reconciler.process_batch() == 0

    asyncio.run(_run())


@pytest.mark.integration
def test_reconciler_retries_after_failed_notification(session_factory) -> None:
    async def _run() -> None:
        job_id = await _enqueue(session_factory, scheduled_for=utcnow() - timedelta(minutes=5))

        down = NotificationReconciler(session_factory=session_factory, notifier=RecordingNotifier(ok=False), grace_seconds=0)
        assert await down.process_batch() == 0
        assert (await _get(session_factory, job_id)).notified_at is None

        up = NotificationReconciler(session_factory=session_factory, notifier=RecordingNotifier(), grace_seconds=0)
        assert await up.process_batch() == 1

    asyncio.run(_run())


@pytest.mark.integration
def test_reconciler_batch_size(session_factory) -> None:
    async def _run() -> None:
        past = utcnow() - timedelta(minutes=5)
        for _ in range(3):
            await _enqueue(session_factory, scheduled_for=past)

        reconciler = NotificationReconciler(
            session_factory=session_factory, notifier=RecordingNotifier(), grace_seconds=0, batch_size=2
        )
        assert await reconciler.process_batch() == 2
        assert await reconciler.process_batch() == 1

    asyncio.run(_run())
