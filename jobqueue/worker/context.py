import asyncio
import logging
from typing import Any, Optional

from jobqueue.domain.errors import JobCancelledError, JobTimeoutError
from jobqueue.domain.models import ReceivedJob

logger = logging.getLogger(__name__)

TIMEOUT = "timeout"
SHUTDOWN = "shutdown"


class CancellationSignal:
    """
    Cooperative cancellation flag handed to every handler.

    Handlers check `cancelled`, await `wait()`, or call `raise_if_cancelled()`.
    The first reason wins; later cancel() calls are ignored.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = SHUTDOWN) -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()

    async def wait(self) -> str:
        await self._event.wait()
        return self.reason

    def raise_if_cancelled(self) -> None:
        if not self.cancelled:
            return
        if self.reason == TIMEOUT:
            raise JobTimeoutError("Job timed out")
        raise JobCancelledError(f"Job cancelled: {self.reason}")


class _JobLogAdapter(logging.LoggerAdapter):
    def process(self, msg, kwargs):
        return f"[job {self.extra['job_id']} {self.extra['job_type']}] {msg}", kwargs


class JobContext:
    def __init__(self, job: ReceivedJob, signal: Optional[CancellationSignal] = None):
        self.job_id = job.id
        self.job_type = job.type
        self.attempt = job.attempts
        self.signal = signal or CancellationSignal()
        self.last_progress: Optional[int] = None
        self.logger = _JobLogAdapter(
            logging.getLogger("jobqueue.jobs"),
            {"job_id": job.id, "job_type": job.type},
        )

    def log(self, message: Any, *args: Any) -> None:
        self.logger.info(str(message), *args)

    def progress(self, percent: float) -> None:
        self.last_progress = int(max(0, min(100, percent)))
        self.logger.debug(f"progress {self.last_progress}%")
