from jobqueue.domain.errors import (
    ConfigurationError,
    JobCancelledError,
    JobError,
    JobNotFoundError,
    JobTimeoutError,
    NoHandlerError,
    ProviderClosedError,
    ReceiptError,
    ScheduleError,
    StaleReceiptError,
)
from jobqueue.domain.models import EnqueueOptions, Job, JobOptions, QueueStats, ReceivedJob, utcnow
from jobqueue.domain.states import JobEvent, JobStatus, TERMINAL_STATUSES

__all__ = [
    "ConfigurationError",
    "EnqueueOptions",
    "Job",
    "JobCancelledError",
    "JobError",
    "JobEvent",
    "JobNotFoundError",
    "JobOptions",
    "JobStatus",
    "JobTimeoutError",
    "NoHandlerError",
    "ProviderClosedError",
    "QueueStats",
    "ReceiptError",
    "ReceivedJob",
    "ScheduleError",
    "StaleReceiptError",
    "TERMINAL_STATUSES",
    "utcnow",
]
