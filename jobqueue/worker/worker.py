import asyncio
import logging
from dataclasses import dataclass

from jobqueue.api.v1.metrics import JOB_DURATION, JOBS_INFLIGHT, JOBS_PROCESSED
from jobqueue.domain.errors import JobCancelledError, StaleReceiptError
from jobqueue.domain.models import ReceivedJob
from jobqueue.providers.base import QueueProvider
from jobqueue.worker.context import SHUTDOWN, TIMEOUT, JobContext
from jobqueue.worker.registry import HandlerRegistry

logger = logging.getLogger(__name__)

# Pause after an unexpected error inside a worker loop
ERROR_PAUSE_SECONDS = 1.0


@dataclass
class WorkerStats:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    active: int = 0
    running: bool = False


class Worker:
    """
    Runs `concurrency` independent receive/execute loops against a provider.

    Job-level failures are routed to provider.fail() and never escape a loop.
    """

    def __init__(
        self,
        provider: QueueProvider,
        registry: HandlerRegistry,
        concurrency: int = 5,
        poll_interval_ms: int = 1000,
        shutdown_timeout_ms: int = 30000,
        mode: str = "in-process",
    ):
        self.provider = provider
        self.registry = registry
        self.concurrency = concurrency
        self.poll_interval_ms = poll_interval_ms
        self.shutdown_timeout_ms = shutdown_timeout_ms
        self.mode = mode

        self._running = False
        self._tasks: list[asyncio.Task] = []
        self._active: dict[str, JobContext] = {}
        self._processed = 0
        self._succeeded = 0
        self._failed = 0

    @property
    def running(self) -> bool:
        return self._running

    def stats(self) -> WorkerStats:
        return WorkerStats(
            processed=self._processed,
            succeeded=self._succeeded,
            failed=self._failed,
            active=len(self._active),
            running=self._running,
        )

    async def start(self):
        if self._running:
            logger.warning("Worker already running")
            return

        self._running = True
        self._tasks = [
            asyncio.create_task(self._loop(i), name=f"jobqueue-worker-{i}")
            for i in range(self.concurrency)
        ]
        logger.info(f"Worker started (mode={self.mode}, concurrency={self.concurrency}, provider={self.provider.name})")

    async def stop(self):
        if not self._running:
            return

        logger.info("Worker stopping...")
        self._running = False

        tasks, self._tasks = self._tasks, []
        if not tasks:
            return

        _, pending = await asyncio.wait(tasks, timeout=self.shutdown_timeout_ms / 1000)
        if pending:
            logger.warning(f"Shutdown timeout reached, interrupting {len(self._active)} active job(s)")
            for ctx in list(self._active.values()):
                ctx.signal.cancel(SHUTDOWN)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        logger.info("Worker stopped")

    async def _loop(self, index: int):
        wait_seconds = self.poll_interval_ms / 1000

        while self._running:
            if self.provider.closed:
                logger.warning(f"Worker loop {index}: provider is closed, exiting")
                break

            try:
                jobs = await self.provider.receive(1, wait_seconds)
                for job in jobs:
                    await self._process(job)
            except Exception as e:
                logger.error(f"Error in worker loop {index}: {e}", exc_info=True)
                await asyncio.sleep(ERROR_PAUSE_SECONDS)

    async def _process(self, job: ReceivedJob):
        ctx = JobContext(job)
        self._active[job.id] = ctx
        JOBS_INFLIGHT.inc()

        loop = asyncio.get_running_loop()
        timer = loop.call_later(job.options.timeout_ms / 1000, ctx.signal.cancel, TIMEOUT)
        started = loop.time()

        logger.info(f"Processing job {job.id} (type={job.type}, attempt={job.attempts})")

        try:
            try:
                await self.registry.execute_job(job, ctx)
            except asyncio.CancelledError:
                # Forced shutdown: report the interrupted attempt before unwinding
                await self._report_failure(job, JobCancelledError("Job interrupted by worker shutdown"))
                self._record(job, "failed", loop.time() - started)
                raise
            except Exception as e:
                elapsed = loop.time() - started
                if ctx.signal.reason == TIMEOUT:
                    logger.error(f"Job {job.id} timed out after {elapsed * 1000:.0f}ms")
                else:
                    logger.error(f"Job {job.id} failed after {elapsed * 1000:.0f}ms: {e}")
                await self._report_failure(job, e)
                self._record(job, "failed", elapsed)
                return

            elapsed = loop.time() - started
            try:
                await self.provider.acknowledge(job.receipt_handle)
            except StaleReceiptError:
                # Lease expired mid-run, the job was already handed out again
                logger.warning(f"Job {job.id} finished after its receipt expired, result discarded")
                self._record(job, "failed", elapsed)
                return

            self._record(job, "succeeded", elapsed)
            logger.info(f"Job {job.id} completed in {elapsed * 1000:.0f}ms")
        finally:
            timer.cancel()
            self._active.pop(job.id, None)
            JOBS_INFLIGHT.dec()

    async def _report_failure(self, job: ReceivedJob, error: BaseException):
        try:
            await self.provider.fail(job.receipt_handle, error)
        except Exception as e:
            logger.error(f"Error failing job {job.id}: {e}")

    def _record(self, job: ReceivedJob, result: str, elapsed: float):
        self._processed += 1
        if result == "succeeded":
            self._succeeded += 1
        else:
            self._failed += 1
        JOBS_PROCESSED.labels(type=job.type, result=result).inc()
        JOB_DURATION.observe(elapsed)
