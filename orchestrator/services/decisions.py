"""
Acquisition decision orchestration.

A decision touches several records that must change together: the candidate's
decision fields, the linked domain's lifecycle, the decision audit trail, the
domain_buy review task and, for buys, the follow-on bid plan job. All of that
happens in one transaction; the worker pool is told about new jobs only after
the commit, and a failed wake-up is left to the NotificationReconciler.
"""
import logging
from typing import Optional, Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from orchestrator.api.v1.metrics import DECISIONS_APPLIED, NOTIFICATIONS_SENT
from orchestrator.commands.enqueue_job import enqueue_if_absent
from orchestrator.commands.transition_lifecycle import advance_lifecycle_for_acquisition
from orchestrator.db.models import AcquisitionCandidate, AcquisitionEvent, ReviewTask
from orchestrator.domain.decisions import (
    DECISION_EVENT_TYPES,
    UNDERWRITING_VERSION,
    check_candidate,
    review_task_status_for,
    validate_command,
)
from orchestrator.domain.errors import (
    CandidateNotFoundError,
    ConcurrentUpdateError,
    ForbiddenError,
    HardFailBlockedError,
    IllegalTransitionError,
    MissingMaxBidError,
    NotificationFailed,
    OrchestratorError,
    ReasonRequiredError,
    TransactionAborted,
    ValidationError,
)
from orchestrator.domain.models import (
    Actor,
    BulkDecisionOutcome,
    BulkItemResult,
    DecisionCommand,
    DecisionOutcome,
    JobSpec,
    LifecycleAdvance,
)
from orchestrator.domain.states import Decision, DecisionPhase, LifecycleState, ReviewTaskStatus
from orchestrator.services.notifier import WorkerPoolNotifier, build_notifier
from orchestrator.services.reconciler import mark_notified
from orchestrator.settings import settings
from orchestrator.utils.time import utcnow

logger = logging.getLogger(__name__)

BID_PLAN_JOB_TYPE = "create_bid_plan"
BID_PLAN_CHANNEL = "acquisition"
DOMAIN_BUY_TASK = "domain_buy"

# Item-level failure codes reported by bulk decisions, most specific class first.
ITEM_FAILURE_CODES = (
    (CandidateNotFoundError, "candidate_not_found"),
    (HardFailBlockedError, "hard_fail_blocked"),
    (MissingMaxBidError, "missing_max_bid"),
    (IllegalTransitionError, "lifecycle_illegal_transition"),
    (ReasonRequiredError, "lifecycle_reason_required"),
    (ForbiddenError, "lifecycle_forbidden"),
    (ConcurrentUpdateError, "concurrent_update"),
)

def item_reason_code(exc: OrchestratorError) -> str:
    for exc_type, code in ITEM_FAILURE_CODES:
        if isinstance(exc, exc_type):
            return code
    return exc.code

async def lock_candidate(session: AsyncSession, candidate_id: UUID) -> Optional[AcquisitionCandidate]:
    stmt = (
        select(AcquisitionCandidate)
        .where(AcquisitionCandidate.id == candidate_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return await session.scalar(stmt)

async def lock_candidates(session: AsyncSession, candidate_ids: Sequence[UUID]) -> None:
    # Ascending id order so overlapping batches queue on the same first row
    stmt = (
        select(AcquisitionCandidate.id)
        .where(AcquisitionCandidate.id.in_(candidate_ids))
        .order_by(AcquisitionCandidate.id)
        .with_for_update()
    )
    await session.execute(stmt)

async def sync_review_task(
    session: AsyncSession,
    candidate: AcquisitionCandidate,
    command: DecisionCommand,
    recommended_max_bid: Optional[float],
    actor: Actor,
) -> ReviewTaskStatus:
    """Upserts the single domain_buy review task so it mirrors this decision."""
    now = utcnow()
    status = review_task_status_for(command.decision)
    reason = command.reason.strip()
    checklist = {
        "decision": str(command.decision),
        "decision_reason": reason,
        "recommended_max_bid": recommended_max_bid,
        "underwriting_version": UNDERWRITING_VERSION,
        "updated_at": now.isoformat(),
    }

    stmt = select(ReviewTask).where(
        ReviewTask.task_type == DOMAIN_BUY_TASK,
        ReviewTask.entity_id == candidate.id,
    ).with_for_update()
    task = await session.scalar(stmt)

    if task is None:
        session.add(ReviewTask(
            task_type=DOMAIN_BUY_TASK,
            entity_id=candidate.id,
            domain_id=candidate.domain_id,
            status=status,
            checklist=checklist,
            reviewer_id=actor.id,
            reviewed_at=now,
            review_notes=reason,
            created_by=actor.id,
            created_at=now,
            updated_at=now,
        ))
    else:
        task.status = status
        task.checklist = checklist
        task.domain_id = candidate.domain_id
        task.reviewer_id = actor.id
        task.reviewed_at = now
        task.review_notes = reason
        task.updated_at = now

    await session.flush()
    return status

async def queue_bid_plan(session: AsyncSession, candidate: AcquisitionCandidate, actor: Actor) -> Optional[UUID]:
    spec = JobSpec(
        job_type=BID_PLAN_JOB_TYPE,
        payload={
            "candidate_id": str(candidate.id),
            "domain": candidate.domain,
            "created_by": actor.id,
            "manual_decision": True,
        },
        priority=settings.BID_PLAN_PRIORITY,
        max_attempts=settings.BID_PLAN_MAX_ATTEMPTS,
        channel=BID_PLAN_CHANNEL,
        entity_key=str(candidate.id),
        domain_id=candidate.domain_id,
    )
    return await enqueue_if_absent(session, spec, dedup_key=f"bid_plan:{candidate.id}")

class DecisionOrchestrator:
    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        notifier: Optional[WorkerPoolNotifier] = None,
        max_bulk_items: Optional[int] = None,
    ):
        if session_factory is None:
            from orchestrator.db.session import AsyncSessionLocal
            session_factory = AsyncSessionLocal
        self.session_factory = session_factory
        self.notifier = notifier or build_notifier()
        self.max_bulk_items = max_bulk_items or settings.BULK_DECISION_MAX_ITEMS

    async def _apply_effects(
        self,
        session: AsyncSession,
        candidate: AcquisitionCandidate,
        command: DecisionCommand,
        actor: Actor,
        recommended_max_bid: Optional[float],
        bulk: bool,
    ) -> tuple[Optional[LifecycleAdvance], ReviewTaskStatus, Optional[UUID]]:
        now = utcnow()
        previous_decision = candidate.decision
        reason = command.reason.strip()
        is_buy = command.decision == Decision.BUY

        # 1. decision fields
        candidate.decision = command.decision
        candidate.decision_reason = reason
        candidate.recommended_max_bid = recommended_max_bid
        if command.clear_hard_fail:
            candidate.hard_fail_reason = None
        candidate.updated_at = now
        await session.flush()

        # 2. lifecycle
        lifecycle = None
        if is_buy and candidate.domain_id is not None:
            lifecycle = await advance_lifecycle_for_acquisition(
                session,
                candidate.domain_id,
                LifecycleState.APPROVED,
                actor,
                reason,
                metadata={
                    "source": "acquisition_bulk_decision" if bulk else "acquisition_decision",
                    "candidate_id": str(candidate.id),
                },
            )

        # 3. audit event
        session.add(AcquisitionEvent(
            candidate_id=candidate.id,
            event_type=DECISION_EVENT_TYPES[command.decision],
            previous_decision=previous_decision,
            decision=command.decision,
            reason=reason,
            actor_id=actor.id,
            actor_role=actor.role,
            payload={
                "domain": candidate.domain,
                "recommended_max_bid": recommended_max_bid,
                "cleared_hard_fail": command.clear_hard_fail,
                "bulk_decision": bulk,
                "manual_decision": True,
            },
            created_at=now,
        ))
        await session.flush()

        # 4. review task
        review_status = await sync_review_task(session, candidate, command, recommended_max_bid, actor)

        # 5. follow-on work
        job_id = None
        if is_buy:
            job_id = await queue_bid_plan(session, candidate, actor)

        return lifecycle, review_status, job_id

    async def _notify(self, job_ids: Sequence[UUID], source: str) -> None:
        """Post-commit wake-up. Raises NotificationFailed; never touches committed state."""
        try:
            ok = await self.notifier.notify(job_ids)
        except Exception as e:
            raise NotificationFailed(str(e)) from e
        if not ok:
            raise NotificationFailed(f"worker pool rejected notification for {len(job_ids)} jobs")

        NOTIFICATIONS_SENT.labels(source=source, result="ok").inc()
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    await mark_notified(session, job_ids)
        except SQLAlchemyError:
            # The reconciler will announce these again; workers tolerate duplicates.
            logger.warning("Could not record notification for jobs %s", job_ids, exc_info=True)

    async def _notify_after_commit(self, job_ids: Sequence[UUID], source: str) -> bool:
        if not job_ids:
            return True
        try:
            await self._notify(job_ids, source)
        except NotificationFailed as e:
            NOTIFICATIONS_SENT.labels(source=source, result="failed").inc()
            logger.error(
                "Decision persisted but failed to notify worker pool (%d jobs): %s", len(job_ids), e
            )
            return False
        return True

    async def apply_decision(self, candidate_id: UUID, command: DecisionCommand, actor: Actor) -> DecisionOutcome:
        """
        Applies a single decision.

        Validation and policy errors are raised as-is (nothing is written).
        Any other failure inside the transaction is rolled back and surfaces
        as TransactionAborted.
        """
        phase = DecisionPhase.VALIDATING
        try:
            validate_command(command, actor)
            async with self.session_factory() as session:
                candidate = await session.get(AcquisitionCandidate, candidate_id)
                if candidate is None:
                    raise CandidateNotFoundError(candidate_id)
                check_candidate(command, candidate_id, candidate.hard_fail_reason, candidate.recommended_max_bid)
        except OrchestratorError:
            DECISIONS_APPLIED.labels(decision=command.decision, mode="single", outcome="rejected").inc()
            logger.info(
                "Decision on candidate %s rejected during %s", candidate_id, phase,
                extra={"candidate_id": candidate_id, "actor_id": actor.id}
            )
            raise

        phase = DecisionPhase.TRANSACTION_OPEN
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    candidate = await lock_candidate(session, candidate_id)
                    if candidate is None:
                        raise CandidateNotFoundError(candidate_id)
                    # Re-check against the locked row; it may have changed since validation
                    max_bid = check_candidate(
                        command, candidate_id, candidate.hard_fail_reason, candidate.recommended_max_bid
                    )
                    previous_decision = candidate.decision
                    lifecycle, review_status, job_id = await self._apply_effects(
                        session, candidate, command, actor, max_bid, bulk=False
                    )
                    phase = DecisionPhase.EFFECTS_APPLIED
                    domain = candidate.domain
        except OrchestratorError:
            DECISIONS_APPLIED.labels(decision=command.decision, mode="single", outcome="rejected").inc()
            logger.info(
                "Decision on candidate %s rolled back by policy check", candidate_id,
                extra={"candidate_id": candidate_id, "actor_id": actor.id}
            )
            raise
        except Exception as e:
            DECISIONS_APPLIED.labels(decision=command.decision, mode="single", outcome="aborted").inc()
            logger.exception(
                "Decision transaction for candidate %s aborted", candidate_id,
                extra={"candidate_id": candidate_id, "actor_id": actor.id}
            )
            raise TransactionAborted("Failed to apply acquisition decision") from e

        phase = DecisionPhase.COMMITTED
        DECISIONS_APPLIED.labels(decision=command.decision, mode="single", outcome="updated").inc()
        logger.info(
            "Decision %s applied to candidate %s", command.decision, candidate_id,
            extra={"candidate_id": candidate_id, "actor_id": actor.id}
        )

        job_ids = [job_id] if job_id else []
        notified = await self._notify_after_commit(job_ids, source="decision") and bool(job_ids)
        if notified:
            phase = DecisionPhase.NOTIFIED

        return DecisionOutcome(
            candidate_id=candidate_id,
            domain=domain,
            decision=command.decision,
            previous_decision=previous_decision,
            recommended_max_bid=max_bid,
            review_task_status=review_status,
            lifecycle=lifecycle,
            follow_on_job_id=job_id,
            notified=notified,
            phase=phase,
        )

    def _unique_ids(self, candidate_ids: Sequence[UUID]) -> list[UUID]:
        unique_ids = list(dict.fromkeys(candidate_ids))
        if not unique_ids:
            raise ValidationError("At least one candidate id is required")
        if len(unique_ids) > self.max_bulk_items:
            raise ValidationError(f"At most {self.max_bulk_items} candidates per bulk decision")
        return unique_ids

    async def apply_bulk_decision(
        self,
        candidate_ids: Sequence[UUID],
        command: DecisionCommand,
        actor: Actor,
    ) -> BulkDecisionOutcome:
        """
        Applies one decision to many candidates.

        Candidates that are missing, hard-fail blocked or lack a max bid are
        reported as failed items without entering the transaction. The rest
        share one transaction with a savepoint each, so a policy failure on one
        item only rolls back that item. Only an unexpected error aborts the
        whole batch.
        """
        validate_command(command, actor)
        unique_ids = self._unique_ids(candidate_ids)

        async with self.session_factory() as session:
            rows = (await session.execute(
                select(AcquisitionCandidate).where(AcquisitionCandidate.id.in_(unique_ids))
            )).scalars().all()
            by_id = {row.id: (row.domain, row.hard_fail_reason, row.recommended_max_bid) for row in rows}

        results: dict[UUID, BulkItemResult] = {}
        eligible: list[UUID] = []
        for candidate_id in unique_ids:
            known = by_id.get(candidate_id)
            try:
                if known is None:
                    raise CandidateNotFoundError(candidate_id)
                domain, hard_fail_reason, stored_bid = known
                check_candidate(command, candidate_id, hard_fail_reason, stored_bid)
            except OrchestratorError as e:
                results[candidate_id] = BulkItemResult(
                    candidate_id=candidate_id,
                    domain=known[0] if known else None,
                    status="failed",
                    reason_code=item_reason_code(e),
                    reason=str(e),
                )
                continue
            eligible.append(candidate_id)

        job_ids: list[UUID] = []
        if eligible:
            try:
                async with self.session_factory() as session:
                    async with session.begin():
                        await lock_candidates(session, eligible)
                        for candidate_id in sorted(eligible):
                            results[candidate_id] = await self._apply_bulk_item(session, candidate_id, command, actor)
            except Exception as e:
                DECISIONS_APPLIED.labels(decision=command.decision, mode="bulk", outcome="aborted").inc(len(eligible))
                logger.exception("Bulk decision transaction aborted (%d candidates)", len(eligible))
                raise TransactionAborted("Failed to apply bulk acquisition decision") from e
            job_ids = [r.follow_on_job_id for r in results.values() if r.follow_on_job_id]

        ordered = [results[candidate_id] for candidate_id in unique_ids]
        for item in ordered:
            DECISIONS_APPLIED.labels(decision=command.decision, mode="bulk", outcome=item.status).inc()

        notified = await self._notify_after_commit(job_ids, source="bulk_decision") and bool(job_ids)
        return BulkDecisionOutcome(
            decision=command.decision,
            results=ordered,
            notified=notified,
            phase=DecisionPhase.NOTIFIED if notified else DecisionPhase.COMMITTED,
        )

    async def _apply_bulk_item(
        self,
        session: AsyncSession,
        candidate_id: UUID,
        command: DecisionCommand,
        actor: Actor,
    ) -> BulkItemResult:
        domain = None
        try:
            async with session.begin_nested():
                candidate = await lock_candidate(session, candidate_id)
                if candidate is None:
                    raise CandidateNotFoundError(candidate_id)
                domain = candidate.domain
                max_bid = check_candidate(
                    command, candidate_id, candidate.hard_fail_reason, candidate.recommended_max_bid
                )
                _, review_status, job_id = await self._apply_effects(
                    session, candidate, command, actor, max_bid, bulk=True
                )
        except OrchestratorError as e:
            logger.info(
                "Bulk decision item %s failed: %s", candidate_id, e,
                extra={"candidate_id": candidate_id, "actor_id": actor.id}
            )
            return BulkItemResult(
                candidate_id=candidate_id,
                domain=domain,
                status="failed",
                reason_code=item_reason_code(e),
                reason=str(e),
            )

        return BulkItemResult(
            candidate_id=candidate_id,
            domain=domain,
            status="updated",
            follow_on_job_id=job_id,
            review_task_status=review_status,
        )
