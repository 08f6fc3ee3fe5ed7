import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional
from uuid import uuid4

from jobqueue.api.v1.metrics import JOBS_ENQUEUED
from jobqueue.domain.errors import ProviderClosedError, StaleReceiptError
from jobqueue.domain.models import EnqueueOptions, Job, QueueStats, ReceivedJob, utcnow
from jobqueue.domain.retry import DEFAULT_BACKOFF_BASE_MS, DEFAULT_BACKOFF_MAX_MS, calculate_backoff_ms
from jobqueue.domain.states import JobStatus
from jobqueue.providers.base import QueueProvider, error_message

logger = logging.getLogger(__name__)


@dataclass
class _StoredJob(Job):
    visible_at: Optional[datetime] = None
    receipt_handle: Optional[str] = None


class MemoryQueueProvider(QueueProvider):
    """
    Single-process queue for development, tests and in-process deployments.

    All mutations run to completion on the event loop without awaiting, so
    no locks are needed. Waiting receivers are woken by a broadcast event
    instead of polling.
    """

    name = "memory"

    def __init__(
        self,
        max_history_size: int = 1000,
        backoff_base_ms: int = DEFAULT_BACKOFF_BASE_MS,
        backoff_max_ms: int = DEFAULT_BACKOFF_MAX_MS,
    ):
        self.max_history_size = max_history_size
        self.backoff_base_ms = backoff_base_ms
        self.backoff_max_ms = backoff_max_ms

        self._jobs: dict[str, _StoredJob] = {}
        self._ready: list[str] = []
        self._receipts: dict[str, str] = {}       # receipt handle -> job id
        self._dedup_keys: dict[str, str] = {}     # deduplication key -> job id
        self._completed_history: deque[str] = deque()
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._wake = asyncio.Event()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def enqueue(self, type: str, payload: Any, options: Optional[EnqueueOptions] = None) -> Job:
        if self._closed:
            raise ProviderClosedError(self.name)

        options = options or EnqueueOptions()

        # Deduplication check first, may short-circuit
        if options.deduplication_key:
            existing_id = self._dedup_keys.get(options.deduplication_key)
            if existing_id:
                existing = self._jobs.get(existing_id)
                if existing and not existing.is_terminal:
                    logger.debug(f"Deduplicated job {existing_id} (key={options.deduplication_key})")
                    return existing.snapshot()
                del self._dedup_keys[options.deduplication_key]

        now = utcnow()
        visible_at = options.visible_at(now)
        delayed = visible_at > now

        job = _StoredJob(
            id=str(uuid4()),
            type=type,
            payload=payload,
            options=options.to_job_options(),
            status=JobStatus.SCHEDULED if delayed else JobStatus.PENDING,
            created_at=now,
            scheduled_for=visible_at if (delayed or options.scheduled_for) else None,
            visible_at=visible_at,
        )
        self._jobs[job.id] = job

        if options.deduplication_key:
            self._dedup_keys[options.deduplication_key] = job.id

        if delayed:
            self._arm_timer(job.id, (visible_at - now).total_seconds())
        else:
            self._insert_ready(job.id)
            self._broadcast()

        JOBS_ENQUEUED.labels(type=type).inc()
        logger.debug(f"Enqueued job {job.id} (type={type}, status={job.status})")
        return job.snapshot()

    async def receive(self, max_messages: int = 1, wait_timeout_seconds: float = 20) -> list[ReceivedJob]:
        if self._closed or max_messages < 1:
            return []

        jobs = self._take_visible(max_messages)
        if jobs:
            return jobs

        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(wait_timeout_seconds, 0)

        while not self._closed:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return []

            # Capture the current event; _broadcast swaps in a fresh one after setting it
            wake = self._wake
            try:
                async with asyncio.timeout(remaining):
                    await wake.wait()
            except TimeoutError:
                return []

            if self._closed:
                return []

            jobs = self._take_visible(max_messages)
            if jobs:
                return jobs

        return []

    async def acknowledge(self, receipt_handle: str) -> None:
        job = self._pop_receipt(receipt_handle)

        job.status = JobStatus.COMPLETED
        job.completed_at = utcnow()
        self._release_dedup_key(job)

        self._completed_history.append(job.id)
        self._trim_history()

    async def fail(self, receipt_handle: str, error: BaseException | str) -> None:
        job = self._pop_receipt(receipt_handle)
        job.last_error = error_message(error)

        if job.attempts >= job.options.max_retries:
            job.status = JobStatus.DEAD
            job.completed_at = utcnow()
            self._release_dedup_key(job)
            logger.warning(f"Job {job.id} (type={job.type}) is dead after {job.attempts} attempt(s): {job.last_error}")
            return

        backoff_ms = calculate_backoff_ms(job.attempts, self.backoff_base_ms, self.backoff_max_ms)
        job.status = JobStatus.PENDING
        job.visible_at = utcnow() + timedelta(milliseconds=backoff_ms)
        self._arm_timer(job.id, backoff_ms / 1000)
        logger.info(f"Job {job.id} failed (attempt {job.attempts}/{job.options.max_retries}), retrying in {backoff_ms}ms")

    async def cancel_scheduled(self, job_id: str) -> bool:
        job = self._jobs.get(job_id)
        if job is None or job.status != JobStatus.SCHEDULED:
            return False

        timer = self._timers.pop(job_id, None)
        if timer:
            timer.cancel()
        self._release_dedup_key(job)
        del self._jobs[job_id]
        logger.info(f"Cancelled scheduled job {job_id} (type={job.type})")
        return True

    async def get_job(self, job_id: str) -> Optional[Job]:
        job = self._jobs.get(job_id)
        return job.snapshot() if job else None

    async def get_stats(self) -> QueueStats:
        stats = QueueStats()
        for job in self._jobs.values():
            stats.increment(job.status)
        return stats

    async def list_jobs(self, status: Optional[JobStatus] = None, limit: int = 100) -> list[Job]:
        jobs = [j for j in self._jobs.values() if status is None or j.status == status]
        jobs.sort(key=lambda j: j.created_at)
        return [j.snapshot() for j in jobs[:limit]]

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()

        # Release suspended receivers
        self._broadcast()
        logger.info("Memory queue provider closed")

    # Internals

    def _take_visible(self, max_messages: int) -> list[ReceivedJob]:
        now = utcnow()
        results: list[ReceivedJob] = []
        remaining: list[str] = []

        for job_id in self._ready:
            job = self._jobs.get(job_id)
            if job is None:
                continue
            if len(results) >= max_messages or job.status != JobStatus.PENDING or job.visible_at > now:
                remaining.append(job_id)
                continue

            receipt_handle = str(uuid4())
            job.status = JobStatus.PROCESSING
            job.receipt_handle = receipt_handle
            job.started_at = now
            job.attempts += 1
            self._receipts[receipt_handle] = job.id

            results.append(ReceivedJob.from_job(job, receipt_handle))

        self._ready = remaining
        return results

    def _insert_ready(self, job_id: str) -> None:
        job = self._jobs.get(job_id)
        if job is None:
            return

        # Before the first entry with a numerically greater priority, FIFO among equals
        insert_index = len(self._ready)
        for i, existing_id in enumerate(self._ready):
            existing = self._jobs.get(existing_id)
            if existing and job.options.priority < existing.options.priority:
                insert_index = i
                break
        self._ready.insert(insert_index, job_id)

    def _arm_timer(self, job_id: str, delay_seconds: float) -> None:
        loop = asyncio.get_running_loop()
        previous = self._timers.pop(job_id, None)
        if previous:
            previous.cancel()
        self._timers[job_id] = loop.call_later(max(delay_seconds, 0), self._on_visible, job_id)

    def _on_visible(self, job_id: str) -> None:
        self._timers.pop(job_id, None)
        if self._closed:
            return

        job = self._jobs.get(job_id)
        if job is None:
            return

        if job.status == JobStatus.SCHEDULED:
            job.status = JobStatus.PENDING
        elif job.status != JobStatus.PENDING:
            # Moved on through some other path
            return

        # The loop clock and the wall clock can disagree by a few microseconds
        job.visible_at = utcnow()
        self._insert_ready(job_id)
        self._broadcast()

    def _broadcast(self) -> None:
        wake, self._wake = self._wake, asyncio.Event()
        wake.set()

    def _pop_receipt(self, receipt_handle: str) -> _StoredJob:
        job_id = self._receipts.pop(receipt_handle, None)
        job = self._jobs.get(job_id) if job_id else None
        if job is None or job.status != JobStatus.PROCESSING or job.receipt_handle != receipt_handle:
            raise StaleReceiptError(receipt_handle)
        job.receipt_handle = None
        return job

    def _release_dedup_key(self, job: Job) -> None:
        key = job.options.deduplication_key
        if key and self._dedup_keys.get(key) == job.id:
            del self._dedup_keys[key]

    def _trim_history(self) -> None:
        while len(self._completed_history) > self.max_history_size:
            old_id = self._completed_history.popleft()
            old = self._jobs.get(old_id)
            if old and old.status == JobStatus.COMPLETED:
                del self._jobs[old_id]


