from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from jobqueue.domain.states import JobStatus, TERMINAL_STATUSES

DEFAULT_MAX_RETRIES = 3
DEFAULT_TIMEOUT_MS = 30000
DEFAULT_PRIORITY = 0

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

@dataclass(frozen=True)
class JobOptions:
    max_retries: int = DEFAULT_MAX_RETRIES
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    # Lower value = higher priority
    priority: int = DEFAULT_PRIORITY
    deduplication_key: Optional[str] = None

@dataclass(frozen=True)
class EnqueueOptions:
    """
    Options accepted by QueueProvider.enqueue.

    Every field is optional; defaults are applied once by to_job_options().
    scheduled_for wins over delay_ms when both are set.
    """
    delay_ms: Optional[int] = None
    scheduled_for: Optional[datetime] = None
    max_retries: Optional[int] = None
    timeout_ms: Optional[int] = None
    priority: Optional[int] = None
    deduplication_key: Optional[str] = None

    def to_job_options(self) -> JobOptions:
        return JobOptions(
            max_retries=DEFAULT_MAX_RETRIES if self.max_retries is None else self.max_retries,
            timeout_ms=DEFAULT_TIMEOUT_MS if self.timeout_ms is None else self.timeout_ms,
            priority=DEFAULT_PRIORITY if self.priority is None else self.priority,
            deduplication_key=self.deduplication_key,
        )

    def visible_at(self, now: datetime) -> datetime:
        if self.scheduled_for is not None:
            scheduled_for = self.scheduled_for
            if scheduled_for.tzinfo is None:
                scheduled_for = scheduled_for.replace(tzinfo=timezone.utc)
            return scheduled_for
        if self.delay_ms:
            return now + timedelta(milliseconds=self.delay_ms)
        return now

@dataclass
class Job:
    id: str
    type: str
    payload: Any
    options: JobOptions
    status: JobStatus
    created_at: datetime = field(default_factory=utcnow)
    attempts: int = 0

    scheduled_for: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def snapshot(self) -> "Job":
        return Job(
            id=self.id,
            type=self.type,
            payload=self.payload,
            options=self.options,
            status=self.status,
            created_at=self.created_at,
            attempts=self.attempts,
            scheduled_for=self.scheduled_for,
            started_at=self.started_at,
            completed_at=self.completed_at,
            last_error=self.last_error,
        )

@dataclass
class ReceivedJob(Job):
    # Only valid while the job is PROCESSING
    receipt_handle: str = ""

    @classmethod
    def from_job(cls, job: Job, receipt_handle: str) -> "ReceivedJob":
        return cls(**{**vars(job.snapshot()), "receipt_handle": receipt_handle})

    def to_job(self) -> Job:
        return Job.snapshot(self)

@dataclass
class QueueStats:
    pending: int = 0
    scheduled: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    dead: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.scheduled + self.processing + self.completed + self.failed + self.dead

    def increment(self, status: JobStatus, count: int = 1) -> None:
        setattr(self, str(status), getattr(self, str(status)) + count)

    def as_dict(self) -> dict[str, int]:
        return asdict(self)
