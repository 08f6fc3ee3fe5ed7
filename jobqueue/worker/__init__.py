from jobqueue.worker.context import CancellationSignal, JobContext
from jobqueue.worker.registry import Handler, HandlerRegistry, RegisteredHandler
from jobqueue.worker.worker import Worker, WorkerStats

__all__ = [
    "CancellationSignal",
    "Handler",
    "HandlerRegistry",
    "JobContext",
    "RegisteredHandler",
    "Worker",
    "WorkerStats",
]
