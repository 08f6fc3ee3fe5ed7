from jobqueue.domain import EnqueueOptions, Job, JobStatus, QueueStats, ReceivedJob
from jobqueue.runtime import QueueRuntime
from jobqueue.scheduler import RecurringJobDefinition
from jobqueue.worker import JobContext

__all__ = [
    "EnqueueOptions",
    "Job",
    "JobContext",
    "JobStatus",
    "QueueRuntime",
    "QueueStats",
    "ReceivedJob",
    "RecurringJobDefinition",
]
