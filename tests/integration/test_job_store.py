import asyncio
import logging
from datetime import timedelta
from uuid import uuid4

import pytest
from sqlalchemy import select, update

from orchestrator.commands.cancel_job import cancel_job
from orchestrator.commands.complete_job import complete_job
from orchestrator.commands.enqueue_job import enqueue
from orchestrator.commands.fail_job import fail_job
from orchestrator.commands.heartbeat import heartbeat
from orchestrator.commands.lease_job import claim_next
from orchestrator.commands.retry_failed import retry_failed_jobs
from orchestrator.db.models import Job, JobEventLog
from orchestrator.domain.errors import (
    InvalidJobStateError,
    JobNotFoundError,
    LeaseExpiredError,
    LeaseNotFoundError,
)
from orchestrator.domain.models import JobSpec
from orchestrator.domain.states import JobEvent, JobStatus
from orchestrator.utils.time import as_utc, utcnow


async def _enqueue(session_factory, **kwargs):
    spec = JobSpec(job_type=kwargs.pop("job_type", "score_candidate"), **kwargs)
    async with session_factory() as session:
        async with session.begin():
            return await enqueue(session, spec)


async def _claim(session_factory, worker_id: str = "worker-1", **kwargs):
    async with session_factory() as session:
        job = await claim_next(session, worker_id, **kwargs)
        await session.commit()
        return job


async def _get(session_factory, job_id) -> Job:
    async with session_factory() as session:
        return await session.get(Job, job_id)


async def _expire_lease(session_factory, job_id) -> None:
    async with session_factory() as session:
        async with session.begin():
            await session.execute(
                update(Job).where(Job.id == job_id).values(locked_until=utcnow() - timedelta(seconds=5))
            )


@pytest.mark.integration
def test_claim_order_priority_then_age(session_factory) -> None:
    async def _run() -> None:
        due = utcnow() - timedelta(minutes=1)
        low = await _enqueue(session_factory, priority=1, scheduled_for=due)
        high = await _enqueue(session_factory, priority=9, scheduled_for=due)
        high_later = await _enqueue(session_factory, priority=9, scheduled_for=due)

        order = [(await _claim(session_factory)).id for _ in range(3)]
        assert order == [high, high_later, low]
        assert await _claim(session_factory) is None

    asyncio.run(_run())


@pytest.mark.integration
def test_earlier_schedule_wins_over_priority(session_factory) -> None:
    async def _run() -> None:
        now = utcnow()
        urgent_later = await _enqueue(session_factory, priority=9, scheduled_for=now - timedelta(seconds=10))
        routine_earlier = await _enqueue(session_factory, priority=0, scheduled_for=now - timedelta(minutes=10))

        assert (await _claim(session_factory)).id == routine_earlier
        assert (await _claim(session_factory)).id == urgent_later

    asyncio.run(_run())


@pytest.mark.integration
def test_future_jobs_are_not_claimable(session_factory) -> None:
    async def _run() -> None:
        await _enqueue(session_factory, scheduled_for=utcnow() + timedelta(hours=1))
        assert await _claim(session_factory) is None

    asyncio.run(_run())


@pytest.mark.integration
def test_claim_sets_lease_fields_and_logs_events(session_factory) -> None:
    async def _run() -> None:
        job_id = await _enqueue(session_factory)
        job = await _claim(session_factory, "worker-7", lease_duration=120)

        assert job.id == job_id
        assert job.status == JobStatus.PROCESSING
        assert job.worker_id == "worker-7"
        assert job.lease_token is not None
        assert job.attempts == 0
        remaining = (as_utc(job.locked_until) - utcnow()).total_seconds()
        assert 100 < remaining <= 120

        async with session_factory() as session:
            events = (await session.execute(
                select(JobEventLog.event_type).where(JobEventLog.job_id == job_id).order_by(JobEventLog.id)
            )).scalars().all()
        assert events == [JobEvent.CREATED, JobEvent.CLAIMED]

    asyncio.run(_run())


@pytest.mark.integration
def test_concurrent_claimers_never_share_a_job(session_factory) -> None:
    async def _run() -> None:
        created = {await _enqueue(session_factory) for _ in range(5)}

        claims = await asyncio.gather(*[_claim(session_factory, f"worker-{i}") for i in range(10)])
        claimed = [job.id for job in claims if job is not None]

        assert len(claimed) == 5
        assert set(claimed) == created

    asyncio.run(_run())


@pytest.mark.integration
def test_channel_filters_unless_fallback(session_factory) -> None:
    async def _run() -> None:
        job_id = await _enqueue(session_factory, channel="acquisition")

        assert await _claim(session_factory, channel="content") is None
        job = await _claim(session_factory, channel="content", fallback=True)
        assert job.id == job_id

    asyncio.run(_run())


@pytest.mark.integration
def test_fallback_prefers_own_channel(session_factory) -> None:
    async def _run() -> None:
        due = utcnow() - timedelta(minutes=5)
        await _enqueue(session_factory, channel="content", priority=9, scheduled_for=due)
        own = await _enqueue(session_factory, channel="acquisition", priority=0, scheduled_for=due)

        job = await _claim(session_factory, channel="acquisition", fallback=True)
        assert job.id == own

    asyncio.run(_run())


@pytest.mark.integration
def test_complete_releases_lease_and_repeat_is_noop(session_factory) -> None:
    async def _run() -> None:
        job_id = await _enqueue(session_factory)
        job = await _claim(session_factory)

        async with session_factory() as session:
            await complete_job(session, job_id, {"ok": True}, lease_token=job.lease_token)
            await session.commit()

        async with session_factory() as session:
            again = await complete_job(session, job_id, {"ok": False}, lease_token=job.lease_token)
            await session.commit()
            assert again.result == {"ok": True}

        stored = await _get(session_factory, job_id)
        assert stored.status == JobStatus.COMPLETED
        assert stored.locked_until is None
        assert stored.lease_token is None
        assert stored.completed_at is not None

    asyncio.run(_run())


@pytest.mark.integration
def test_complete_unknown_job(session_factory) -> None:
    async def _run() -> None:
        async with session_factory() as session:
            with pytest.raises(JobNotFoundError):
                await complete_job(session, uuid4())

    asyncio.run(_run())


@pytest.mark.integration
def test_fail_retries_until_attempts_exhausted(session_factory) -> None:
    async def _run() -> None:
        job_id = await _enqueue(session_factory, max_attempts=2)

        job = await _claim(session_factory)
        async with session_factory() as session:
            retried = await fail_job(session, job_id, "boom", lease_token=job.lease_token, retry_delay_seconds=0)
            await session.commit()
        assert retried.status == JobStatus.PENDING
        assert retried.attempts == 1
        assert retried.locked_until is None

        job = await _claim(session_factory)
        assert job.id == job_id
        async with session_factory() as session:
            final = await fail_job(session, job_id, "boom again", lease_token=job.lease_token)
            await session.commit()
        assert final.status == JobStatus.FAILED
        assert final.attempts == 2
        assert final.error_message == "boom again"

        assert await _claim(session_factory) is None

    asyncio.run(_run())


@pytest.mark.integration
def test_fail_pushes_schedule_out_by_backoff(session_factory) -> None:
    async def _run() -> None:
        job_id = await _enqueue(session_factory)
        job = await _claim(session_factory)
        before = utcnow()

        async with session_factory() as session:
            await fail_job(session, job_id, "transient", lease_token=job.lease_token)
            await session.commit()

        stored = await _get(session_factory, job_id)
        # Default base delay is 60s doubled once for the first failure
        assert as_utc(stored.scheduled_for) >= before + timedelta(seconds=119)
        assert await _claim(session_factory) is None

    asyncio.run(_run())


@pytest.mark.integration
def test_failed_job_with_attempts_left_is_claimable(session_factory) -> None:
    async def _run() -> None:
        job_id = await _enqueue(session_factory, max_attempts=3)
        async with session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(Job).where(Job.id == job_id).values(status=JobStatus.FAILED, attempts=1)
                )

        job = await _claim(session_factory)
        assert job.id == job_id
        assert job.attempts == 1

    asyncio.run(_run())


@pytest.mark.integration
def test_fail_with_wrong_token_is_rejected(session_factory) -> None:
    async def _run() -> None:
        job_id = await _enqueue(session_factory)
        await _claim(session_factory)

        async with session_factory() as session:
            with pytest.raises(LeaseNotFoundError):
                await fail_job(session, job_id, "nope", lease_token=uuid4())

    asyncio.run(_run())


@pytest.mark.integration
def test_cancelled_job_is_skipped_by_claimers(session_factory) -> None:
    async def _run() -> None:
        job_id = await _enqueue(session_factory)

        async with session_factory() as session:
            cancelled = await cancel_job(session, job_id, reason="superseded")
            await session.commit()
        assert cancelled.status == JobStatus.CANCELLED

        assert await _claim(session_factory) is None

    asyncio.run(_run())


@pytest.mark.integration
def test_cannot_cancel_processing_job(session_factory) -> None:
    async def _run() -> None:
        job_id = await _enqueue(session_factory)
        await _claim(session_factory)

        async with session_factory() as session:
            with pytest.raises(InvalidJobStateError):
                await cancel_job(session, job_id)

    asyncio.run(_run())


@pytest.mark.integration
def test_expired_lease_is_reclaimed_by_another_worker(session_factory) -> None:
    async def _run() -> None:
        job_id = await _enqueue(session_factory, max_attempts=3)
        first = await _claim(session_factory, "worker-a")
        await _expire_lease(session_factory, job_id)

        second = await _claim(session_factory, "worker-b")
        assert second.id == job_id
        assert second.worker_id == "worker-b"
        assert second.attempts == 1
        assert second.lease_token != first.lease_token

        # The crashed worker's token no longer works
        async with session_factory() as session:
            with pytest.raises(LeaseNotFoundError):
                await heartbeat(session, job_id, first.lease_token)
        async with session_factory() as session:
            with pytest.raises(LeaseNotFoundError):
                await complete_job(session, job_id, {}, lease_token=first.lease_token)

        async with session_factory() as session:
            events = (await session.execute(
                select(JobEventLog.event_type).where(JobEventLog.job_id == job_id).order_by(JobEventLog.id)
            )).scalars().all()
        assert events[-1] == JobEvent.RECLAIMED

    asyncio.run(_run())


@pytest.mark.integration
def test_live_lease_is_not_reclaimed(session_factory) -> None:
    async def _run() -> None:
        await _enqueue(session_factory)
        await _claim(session_factory, "worker-a")
        assert await _claim(session_factory, "worker-b") is None

    asyncio.run(_run())


@pytest.mark.integration
def test_heartbeat_extends_live_lease_only(session_factory) -> None:
    async def _run() -> None:
        job_id = await _enqueue(session_factory)
        job = await _claim(session_factory, lease_duration=30)

        async with session_factory() as session:
            expires_at = await heartbeat(session, job_id, job.lease_token, extend_seconds=600)
            await session.commit()
        assert (expires_at - utcnow()).total_seconds() > 500

        await _expire_lease(session_factory, job_id)
        async with session_factory() as session:
            with pytest.raises(LeaseExpiredError):
                await heartbeat(session, job_id, job.lease_token)

    asyncio.run(_run())


@pytest.mark.integration
def test_retry_failed_resets_oldest_failures_up_to_limit(session_factory) -> None:
    async def _run() -> None:
        ids = [await _enqueue(session_factory, max_attempts=1) for _ in range(3)]
        for job_id in ids:
            job = await _claim(session_factory)
            async with session_factory() as session:
                await fail_job(session, job.id, "boom", lease_token=job.lease_token)
                await session.commit()

        async with session_factory() as session:
            assert await retry_failed_jobs(session, limit=2) == 2
            await session.commit()

        statuses = [(await _get(session_factory, job_id)).status for job_id in ids]
        assert statuses == [JobStatus.PENDING, JobStatus.PENDING, JobStatus.FAILED]

        retried = await _get(session_factory, ids[0])
        assert retried.attempts == 0
        assert retried.error_message is None
        assert retried.completed_at is None
        assert (await _claim(session_factory)).id == ids[0]

        async with session_factory() as session:
            events = (await session.execute(
                select(JobEventLog.event_type).where(JobEventLog.job_id == ids[1]).order_by(JobEventLog.id)
            )).scalars().all()
        assert events[-1] == JobEvent.RETRIED

    asyncio.run(_run())


@pytest.mark.integration
def test_heartbeat_records_lease_renewal(session_factory) -> None:
    async def _run() -> None:
        job_id = await _enqueue(session_factory)
        job = await _claim(session_factory, "worker-3")

        async with session_factory() as session:
            await heartbeat(session, job_id, job.lease_token, extend_seconds=120)
            await session.commit()

        async with session_factory() as session:
            renewal = (await session.execute(
                select(JobEventLog).where(JobEventLog.job_id == job_id).order_by(JobEventLog.id.desc()).limit(1)
            )).scalar_one()
        assert renewal.event_type == JobEvent.LEASE_RENEWED
        assert renewal.meta["worker_id"] == "worker-3"

    asyncio.run(_run())


@pytest.mark.integration
def test_lease_is_expired_at_its_exact_deadline(session_factory, monkeypatch) -> None:
    async def _run() -> None:
        job_id = await _enqueue(session_factory)
        first = await _claim(session_factory, "worker-a", lease_duration=60)
        deadline = as_utc((await _get(session_factory, job_id)).locked_until)

        monkeypatch.setattr("orchestrator.commands.heartbeat.utcnow", lambda: deadline)
        monkeypatch.setattr("orchestrator.commands.lease_job.utcnow", lambda: deadline)

        async with session_factory() as session:
            with pytest.raises(LeaseExpiredError):
                await heartbeat(session, job_id, first.lease_token)

        second = await _claim(session_factory, "worker-b")
        assert second.id == job_id
        assert second.worker_id == "worker-b"

    asyncio.run(_run())


@pytest.mark.integration
def test_reclaim_log_carries_job_and_worker(session_factory, caplog) -> None:
    async def _run() -> None:
        job_id = await _enqueue(session_factory)
        await _claim(session_factory, "worker-a")
        await _expire_lease(session_factory, job_id)

        with caplog.at_level(logging.WARNING, logger="orchestrator.commands.lease_job"):
            await _claim(session_factory, "worker-b")

        reclaimed = [r for r in caplog.records if r.name == "orchestrator.commands.lease_job"]
        assert reclaimed
        assert reclaimed[-1].job_id == job_id
        assert reclaimed[-1].worker_id == "worker-b"

    asyncio.run(_run())
