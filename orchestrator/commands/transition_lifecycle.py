import logging
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from orchestrator.api.v1.metrics import LIFECYCLE_TRANSITIONS
from orchestrator.db.models import Domain, LifecycleEvent
from orchestrator.domain.errors import ConcurrentUpdateError, DomainNotFoundError
from orchestrator.domain.lifecycle import (
    acquisition_path,
    authorize_transition,
    normalize_role,
    normalize_state,
)
from orchestrator.domain.models import Actor, LifecycleAdvance
from orchestrator.domain.states import LifecycleState
from orchestrator.utils.time import utcnow

logger = logging.getLogger(__name__)

async def _load_domain(session: AsyncSession, domain_id: UUID) -> Optional[Domain]:
    stmt = select(Domain).where(Domain.id == domain_id).execution_options(populate_existing=True)
    return await session.scalar(stmt)

async def _apply_step(
    session: AsyncSession,
    domain_id: UUID,
    from_state: LifecycleState,
    to_state: LifecycleState,
    actor: Actor,
    reason: Optional[str],
    metadata: dict[str, Any],
    now: datetime,
    stored_state: Optional[str] = None,
) -> None:
    # Guarded on the stored value we read; it may predate the current state set
    expected = stored_state if stored_state is not None else from_state
    stmt = (
        update(Domain)
        .where(Domain.id == domain_id, Domain.lifecycle_state == expected)
        .values(lifecycle_state=to_state, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    if result.rowcount != 1:
        raise ConcurrentUpdateError(
            f"Domain {domain_id} lifecycle changed concurrently (expected {from_state})"
        )

    session.add(LifecycleEvent(
        domain_id=domain_id,
        actor_id=actor.id,
        actor_role=str(normalize_role(actor.role)),
        from_state=from_state,
        to_state=to_state,
        reason=(reason or "").strip() or None,
        meta=metadata,
        created_at=now,
    ))
    await session.flush()
    LIFECYCLE_TRANSITIONS.labels(from_state=from_state, to_state=to_state).inc()

async def transition_lifecycle(
    session: AsyncSession,
    domain_id: UUID,
    to_state: LifecycleState,
    actor: Actor,
    reason: Optional[str] = None,
    metadata: Optional[dict[str, Any]] = None,
) -> LifecycleAdvance:
    """
    Moves a domain to `to_state` in the caller's transaction.

    Same-state requests succeed without writing anything. Policy violations
    raise before any write; a concurrent change of the domain's state raises
    ConcurrentUpdateError.
    """
    domain = await _load_domain(session, domain_id)
    if domain is None:
        raise DomainNotFoundError(domain_id)

    from_state = normalize_state(domain.lifecycle_state)
    if not authorize_transition(from_state, to_state, actor.role, reason):
        return LifecycleAdvance(changed=False, from_state=from_state, to_state=from_state)

    await _apply_step(
        session, domain_id, from_state, to_state, actor, reason, metadata or {}, utcnow(),
        stored_state=domain.lifecycle_state,
    )
    logger.info(
        "Domain %s lifecycle %s -> %s by %s", domain_id, from_state, to_state, actor.id,
        extra={"domain_id": domain_id, "actor_id": actor.id}
    )
    return LifecycleAdvance(
        changed=True,
        from_state=from_state,
        to_state=to_state,
        applied_states=[to_state],
    )

async def advance_lifecycle_for_acquisition(
    session: AsyncSession,
    domain_id: UUID,
    target_state: LifecycleState,
    actor: Actor,
    reason: str,
    metadata: Optional[dict[str, Any]] = None,
) -> LifecycleAdvance:
    """
    Walks a domain forward along the acquisition progression up to
    `target_state`, one authorized step (and one event) at a time.

    Nothing happens when the domain is missing, already at or beyond the
    target, or parked outside the progression (hold, sell, sunset). A policy
    denial on any step raises, which rolls back the caller's transaction.
    """
    domain = await _load_domain(session, domain_id)
    if domain is None:
        return LifecycleAdvance(changed=False, from_state=None, to_state=None, skipped_reason="domain_not_found")

    starting_state = normalize_state(domain.lifecycle_state)
    path = acquisition_path(starting_state, target_state)
    if not path:
        return LifecycleAdvance(
            changed=False,
            from_state=starting_state,
            to_state=starting_state,
            skipped_reason="already_at_or_beyond_target_or_outside_progression",
        )

    now = utcnow()
    step_metadata = {
        **(metadata or {}),
        "actor_role": str(normalize_role(actor.role)),
        "target_state": str(target_state),
    }
    applied: list[LifecycleState] = []
    current = starting_state
    stored = domain.lifecycle_state
    for next_state in path:
        authorize_transition(current, next_state, actor.role, reason)
        await _apply_step(
            session, domain_id, current, next_state, actor, reason, step_metadata, now, stored_state=stored
        )
        stored = next_state
        applied.append(next_state)
        current = next_state

    logger.info(
        "Domain %s advanced %s -> %s for acquisition", domain_id, starting_state, current
    )
    return LifecycleAdvance(
        changed=True,
        from_state=starting_state,
        to_state=current,
        applied_states=applied,
    )
