from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, String, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from jobqueue.db.session import Base
from jobqueue.domain.models import Job, JobOptions, ReceivedJob, utcnow
from jobqueue.domain.states import JobEvent, JobStatus

# JSONB on Postgres, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")

# Deduplication keys stay bound while a job is in one of these states
_ACTIVE_STATUSES_SQL = "status IN ('pending', 'scheduled', 'processing', 'failed')"


def _uuid_str() -> str:
    return str(uuid4())


class QueueJob(Base):
    __tablename__ = "queue_jobs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid_str)
    type: Mapped[str] = mapped_column(String, nullable=False, index=True)
    payload: Mapped[Any] = mapped_column(JSONType, nullable=True)

    status: Mapped[JobStatus] = mapped_column(String, default=JobStatus.PENDING, index=True)
    priority: Mapped[int] = mapped_column(Integer, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, default=3)
    timeout_ms: Mapped[int] = mapped_column(Integer, default=30000)
    deduplication_key: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    available_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    scheduled_for: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    lease: Mapped[Optional["JobLease"]] = relationship("JobLease", back_populates="job", uselist=False, cascade="all, delete-orphan")
    events: Mapped[list["JobEventLog"]] = relationship("JobEventLog", back_populates="job", cascade="all, delete-orphan", passive_deletes=True)

    __table_args__ = (
        # "receive" query: status=pending + available_at <= now, ordered by priority
        Index("ix_queue_jobs_poll", "status", "priority", "available_at"),
        # At most one live job per deduplication key
        Index(
            "ix_queue_jobs_dedup_active",
            "deduplication_key",
            unique=True,
            postgresql_where=text(f"deduplication_key IS NOT NULL AND {_ACTIVE_STATUSES_SQL}"),
            sqlite_where=text(f"deduplication_key IS NOT NULL AND {_ACTIVE_STATUSES_SQL}"),
        ),
    )


class JobLease(Base):
    __tablename__ = "job_leases"

    job_id: Mapped[str] = mapped_column(String(36), ForeignKey("queue_jobs.id", ondelete="CASCADE"), primary_key=True)
    receipt_handle: Mapped[str] = mapped_column(String(36), unique=True, default=_uuid_str)
    worker_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    job: Mapped["QueueJob"] = relationship("QueueJob", back_populates="lease")


class JobEventLog(Base):
    __tablename__ = "job_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(String(36), ForeignKey("queue_jobs.id", ondelete="CASCADE"), index=True)

    event_type: Mapped[JobEvent] = mapped_column(String, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    # Context (receipt handle, error message, attempt number)
    meta: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)

    job: Mapped["QueueJob"] = relationship("QueueJob", back_populates="events")


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything is stored in UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def to_domain_job(row: QueueJob) -> Job:
    return Job(
        id=row.id,
        type=row.type,
        payload=row.payload,
        options=JobOptions(
            max_retries=row.max_retries,
            timeout_ms=row.timeout_ms,
            priority=row.priority,
            deduplication_key=row.deduplication_key,
        ),
        status=JobStatus(row.status),
        created_at=_aware(row.created_at),
        attempts=row.attempts,
        scheduled_for=_aware(row.scheduled_for),
        started_at=_aware(row.started_at),
        completed_at=_aware(row.completed_at),
        last_error=row.last_error,
    )


def to_received_job(row: QueueJob, lease: JobLease) -> ReceivedJob:
    return ReceivedJob.from_job(to_domain_job(row), lease.receipt_handle)
