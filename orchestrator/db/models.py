from datetime import datetime
from typing import Optional, Any
from uuid import UUID, uuid4

from sqlalchemy import (
    String, Integer, Float, Text, DateTime, ForeignKey, Index, UniqueConstraint, JSON, Uuid, func, text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.dialects.postgresql import JSONB

from orchestrator.db.session import Base
from orchestrator.domain.states import JobStatus, JobEvent, LifecycleState, ReviewTaskStatus
from orchestrator.utils.time import utcnow

# JSONB on Postgres, plain JSON elsewhere (tests run on SQLite)
JsonType = JSON().with_variant(JSONB(), "postgresql")

ACTIVE_ENTITY_PREDICATE = "status IN ('pending', 'processing') AND entity_key IS NOT NULL"

class Job(Base):
    __tablename__ = "jobs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    job_type: Mapped[str] = mapped_column(String, nullable=False, index=True)

    # Core orchestration fields
    status: Mapped[JobStatus] = mapped_column(String, default=JobStatus.PENDING, index=True)
    priority: Mapped[int] = mapped_column(Integer, default=0)
    channel: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    # Dedup / filtering
    entity_key: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    domain_id: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True, index=True)

    # Scheduling fields
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow)
    scheduled_for: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    notified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Lease
    locked_until: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    worker_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    lease_token: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True)

    # Retry logic
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    payload: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)
    result: Mapped[Optional[dict[str, Any]]] = mapped_column(JsonType, nullable=True)

    events: Mapped[list["JobEventLog"]] = relationship("JobEventLog", back_populates="job", cascade="all, delete-orphan")

    __table_args__ = (
        # Claim query: status + due time
        Index("ix_jobs_claim", "status", "scheduled_for", "priority"),
        # At most one active job per (job_type, entity_key)
        Index(
            "uq_jobs_active_entity",
            "job_type",
            "entity_key",
            unique=True,
            postgresql_where=text(ACTIVE_ENTITY_PREDICATE),
            sqlite_where=text(ACTIVE_ENTITY_PREDICATE),
        ),
    )

class JobEventLog(Base):
    __tablename__ = "job_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("jobs.id", ondelete="CASCADE"), index=True)

    event_type: Mapped[JobEvent] = mapped_column(String, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())

    # Context (worker_id, error message, attempt number)
    meta: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)

    job: Mapped["Job"] = relationship("Job", back_populates="events")

class Domain(Base):
    __tablename__ = "domains"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    domain: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    lifecycle_state: Mapped[LifecycleState] = mapped_column(String, default=LifecycleState.SOURCED, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow)

class LifecycleEvent(Base):
    __tablename__ = "domain_lifecycle_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    domain_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("domains.id", ondelete="CASCADE"), index=True)
    actor_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    actor_role: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    from_state: Mapped[str] = mapped_column(String, nullable=False)
    to_state: Mapped[str] = mapped_column(String, nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    meta: Mapped[dict[str, Any]] = mapped_column("metadata", JsonType, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())

class AcquisitionCandidate(Base):
    __tablename__ = "acquisition_candidates"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    domain: Mapped[str] = mapped_column(String, nullable=False)
    domain_id: Mapped[Optional[UUID]] = mapped_column(Uuid, ForeignKey("domains.id"), nullable=True)

    decision: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    decision_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    recommended_max_bid: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    hard_fail_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow)

class AcquisitionEvent(Base):
    __tablename__ = "acquisition_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    candidate_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("acquisition_candidates.id", ondelete="CASCADE"), index=True)
    event_type: Mapped[str] = mapped_column(String, nullable=False)
    previous_decision: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    decision: Mapped[str] = mapped_column(String, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    actor_id: Mapped[str] = mapped_column(String, nullable=False)
    actor_role: Mapped[str] = mapped_column(String, nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())

class ReviewTask(Base):
    __tablename__ = "review_tasks"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    task_type: Mapped[str] = mapped_column(String, nullable=False)
    entity_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    domain_id: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True)
    status: Mapped[ReviewTaskStatus] = mapped_column(String, default=ReviewTaskStatus.PENDING, nullable=False)
    checklist: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)
    reviewer_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    review_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_by: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("task_type", "entity_id", name="uq_review_tasks_entity"),
    )
