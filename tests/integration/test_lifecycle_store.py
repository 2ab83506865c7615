import asyncio
from uuid import uuid4

import pytest
from sqlalchemy import select

from orchestrator.commands.transition_lifecycle import advance_lifecycle_for_acquisition, transition_lifecycle
from orchestrator.db.models import Domain, LifecycleEvent
from orchestrator.domain.errors import DomainNotFoundError, ForbiddenError, ReasonRequiredError
from orchestrator.domain.models import Actor
from orchestrator.domain.states import ActorRole, LifecycleState
from tests.integration.seed import seed_domain

EXPERT = Actor(id="exp-1", role=ActorRole.EXPERT)
EDITOR = Actor(id="ed-1", role=ActorRole.EDITOR)


async def _state_and_events(session_factory, domain_id):
    async with session_factory() as session:
        domain = await session.get(Domain, domain_id)
        events = (await session.execute(
            select(LifecycleEvent).where(LifecycleEvent.domain_id == domain_id).order_by(LifecycleEvent.id)
        )).scalars().all()
    return domain.lifecycle_state, events


@pytest.mark.integration
def test_transition_writes_state_and_event(session_factory) -> None:
    async def _run() -> None:
        domain_id = await seed_domain(session_factory, lifecycle_state="growth")

        async with session_factory() as session:
            async with session.begin():
                result = await transition_lifecycle(
                    session, domain_id, LifecycleState.HOLD, EXPERT,
                    reason="  traffic collapsed after update ", metadata={"ticket": "OPS-12"},
                )

        assert result.changed is True
        assert (result.from_state, result.to_state) == (LifecycleState.GROWTH, LifecycleState.HOLD)

        state, events = await _state_and_events(session_factory, domain_id)
        assert state == LifecycleState.HOLD
        assert len(events) == 1
        assert events[0].to_state == state
        assert events[0].reason == "traffic collapsed after update"
        assert events[0].actor_role == "expert"
        assert events[0].meta == {"ticket": "OPS-12"}

    asyncio.run(_run())


@pytest.mark.integration
def test_same_state_is_a_noop(session_factory) -> None:
    async def _run() -> None:
        domain_id = await seed_domain(session_factory, lifecycle_state="build")

        async with session_factory() as session:
            async with session.begin():
                result = await transition_lifecycle(session, domain_id, LifecycleState.BUILD, EDITOR)

        assert result.changed is False
        assert (await _state_and_events(session_factory, domain_id))[1] == []

    asyncio.run(_run())


@pytest.mark.integration
def test_denied_transition_writes_nothing(session_factory) -> None:
    async def _run() -> None:
        domain_id = await seed_domain(session_factory, lifecycle_state="approved")

        async with session_factory() as session:
            with pytest.raises(ForbiddenError):
                await transition_lifecycle(session, domain_id, LifecycleState.ACQUIRED, EDITOR)
        async with session_factory() as session:
            with pytest.raises(ReasonRequiredError):
                await transition_lifecycle(session, domain_id, LifecycleState.HOLD, EXPERT, reason="later")

        state, events = await _state_and_events(session_factory, domain_id)
        assert state == LifecycleState.APPROVED
        assert events == []

    asyncio.run(_run())


@pytest.mark.integration
def test_unknown_stored_state_is_treated_as_sourced(session_factory) -> None:
    async def _run() -> None:
        domain_id = await seed_domain(session_factory, lifecycle_state="legacy_import")

        async with session_factory() as session:
            async with session.begin():
                result = await transition_lifecycle(session, domain_id, LifecycleState.UNDERWRITING, EDITOR)

        assert result.from_state == LifecycleState.SOURCED
        state, events = await _state_and_events(session_factory, domain_id)
        assert state == LifecycleState.UNDERWRITING
        assert events[0].from_state == "sourced"

    asyncio.run(_run())


@pytest.mark.integration
def test_missing_domain(session_factory) -> None:
    async def _run() -> None:
        async with session_factory() as session:
            with pytest.raises(DomainNotFoundError):
                await transition_lifecycle(session, uuid4(), LifecycleState.UNDERWRITING, EDITOR)

            skipped = await advance_lifecycle_for_acquisition(
                session, uuid4(), LifecycleState.APPROVED, EXPERT, "bought at auction"
            )
        assert skipped.changed is False
        assert skipped.skipped_reason == "domain_not_found"

    asyncio.run(_run())


@pytest.mark.integration
def test_acquisition_advance_is_one_event_per_step(session_factory) -> None:
    async def _run() -> None:
        domain_id = await seed_domain(session_factory)

        async with session_factory() as session:
            async with session.begin():
                result = await advance_lifecycle_for_acquisition(
                    session, domain_id, LifecycleState.APPROVED, EXPERT, "approved in weekly review",
                    metadata={"candidate_id": "c-1"},
                )

        assert result.applied_states == [LifecycleState.UNDERWRITING, LifecycleState.APPROVED]
        state, events = await _state_and_events(session_factory, domain_id)
        assert state == LifecycleState.APPROVED
        assert [(e.from_state, e.to_state) for e in events] == [
            ("sourced", "underwriting"),
            ("underwriting", "approved"),
        ]
        assert all(e.meta["target_state"] == "approved" for e in events)
        assert events[-1].to_state == state

    asyncio.run(_run())


@pytest.mark.integration
def test_acquisition_advance_denied_for_editor(session_factory) -> None:
    async def _run() -> None:
        domain_id = await seed_domain(session_factory)

        async with session_factory() as session:
            with pytest.raises(ForbiddenError):
                async with session.begin():
                    await advance_lifecycle_for_acquisition(
                        session, domain_id, LifecycleState.APPROVED, EDITOR, "approved in weekly review"
                    )

        state, events = await _state_and_events(session_factory, domain_id)
        assert state == LifecycleState.SOURCED
        assert events == []

    asyncio.run(_run())
