import asyncio

import pytest
from sqlalchemy import func, select, update

from orchestrator.commands.complete_job import complete_job
from orchestrator.commands.enqueue_job import enqueue, enqueue_if_absent, insert_unique_job
from orchestrator.commands.lease_job import claim_next
from orchestrator.db.models import Job
from orchestrator.domain.errors import DuplicateJobConflict
from orchestrator.domain.models import JobSpec
from orchestrator.domain.states import JobStatus


def _spec(entity_key: str = "cand-1", job_type: str = "create_bid_plan") -> JobSpec:
    return JobSpec(job_type=job_type, payload={"candidate_id": entity_key}, entity_key=entity_key)


async def _enqueue_if_absent(session_factory, spec: JobSpec):
    async with session_factory() as session:
        async with session.begin():
            return await enqueue_if_absent(session, spec)


async def _count(session_factory, *criteria) -> int:
    async with session_factory() as session:
        return await session.scalar(select(func.count(Job.id)).where(*criteria))


@pytest.mark.integration
def test_second_enqueue_for_same_entity_is_skipped(session_factory) -> None:
    async def _run() -> None:
        first = await _enqueue_if_absent(session_factory, _spec())
        second = await _enqueue_if_absent(session_factory, _spec())

        assert first is not None
        assert second is None
        assert await _count(session_factory, Job.job_type == "create_bid_plan") == 1

    asyncio.run(_run())


@pytest.mark.integration
def test_other_entities_and_job_types_are_independent(session_factory) -> None:
    async def _run() -> None:
        assert await _enqueue_if_absent(session_factory, _spec("cand-1")) is not None
        assert await _enqueue_if_absent(session_factory, _spec("cand-2")) is not None
        assert await _enqueue_if_absent(session_factory, _spec("cand-1", job_type="score_candidate")) is not None

    asyncio.run(_run())


@pytest.mark.integration
def test_processing_job_still_blocks_duplicates(session_factory) -> None:
    async def _run() -> None:
        await _enqueue_if_absent(session_factory, _spec())
        async with session_factory() as session:
            await claim_next(session, "worker-1")
            await session.commit()

        assert await _enqueue_if_absent(session_factory, _spec()) is None

    asyncio.run(_run())


@pytest.mark.integration
def test_finished_job_allows_a_new_one(session_factory) -> None:
    async def _run() -> None:
        first = await _enqueue_if_absent(session_factory, _spec())
        async with session_factory() as session:
            job = await claim_next(session, "worker-1")
            await complete_job(session, job.id, {"ok": True})
            await session.commit()

        second = await _enqueue_if_absent(session_factory, _spec())
        assert second is not None
        assert second != first

    asyncio.run(_run())


@pytest.mark.integration
def test_concurrent_enqueuers_create_exactly_one(session_factory) -> None:
    async def _run() -> None:
        results = await asyncio.gather(*[_enqueue_if_absent(session_factory, _spec()) for _ in range(8)])

        created = [r for r in results if r is not None]
        assert len(created) == 1
        assert await _count(session_factory, Job.job_type == "create_bid_plan", Job.status == JobStatus.PENDING) == 1

    asyncio.run(_run())


@pytest.mark.integration
def test_unique_index_backstop_returns_none(session_factory) -> None:
    async def _run() -> None:
        async with session_factory() as session:
            async with session.begin():
                original = await enqueue(session, _spec())
                # Skips the lock and existence check: only the partial index stops it
                duplicate = await insert_unique_job(session, _spec())
                assert duplicate is None
                # The savepoint rollback leaves the outer transaction usable
                assert await session.get(Job, original) is not None

        assert await _count(session_factory, Job.job_type == "create_bid_plan") == 1

    asyncio.run(_run())


@pytest.mark.integration
def test_unique_index_ignores_finished_jobs(session_factory) -> None:
    async def _run() -> None:
        async with session_factory() as session:
            async with session.begin():
                job_id = await enqueue(session, _spec())
                await session.execute(
                    update(Job).where(Job.id == job_id).values(status=JobStatus.FAILED)
                )
                assert await insert_unique_job(session, _spec()) is not None

    asyncio.run(_run())


@pytest.mark.integration
def test_entity_key_is_required(session_factory) -> None:
    async def _run() -> None:
        async with session_factory() as session:
            with pytest.raises(ValueError):
                await enqueue_if_absent(session, JobSpec(job_type="create_bid_plan"))

    asyncio.run(_run())


@pytest.mark.integration
def test_plain_enqueue_conflicts_on_active_entity(session_factory) -> None:
    async def _run() -> None:
        async with session_factory() as session:
            async with session.begin():
                first = await enqueue(session, _spec("d1", job_type="deploy"))

        async with session_factory() as session:
            async with session.begin():
                with pytest.raises(DuplicateJobConflict):
                    await enqueue(session, _spec("d1", job_type="deploy"))
                # The failed insert is rolled back to its savepoint only
                other = await enqueue(session, _spec("d2", job_type="deploy"))

        assert other != first
        assert await _count(session_factory, Job.job_type == "deploy") == 2

    asyncio.run(_run())


@pytest.mark.integration
def test_plain_enqueue_without_entity_key_never_conflicts(session_factory) -> None:
    async def _run() -> None:
        async with session_factory() as session:
            async with session.begin():
                await enqueue(session, JobSpec(job_type="deploy"))
                await enqueue(session, JobSpec(job_type="deploy"))

        assert await _count(session_factory, Job.job_type == "deploy") == 2

    asyncio.run(_run())
