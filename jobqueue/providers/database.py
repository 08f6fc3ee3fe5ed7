import asyncio
import logging
import os
import socket
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine

from jobqueue.api.v1.metrics import JOBS_ENQUEUED
from jobqueue.commands.complete_job import complete_job, trim_completed_history
from jobqueue.commands.enqueue_job import cancel_scheduled_job, enqueue_job, find_active_by_dedup_key
from jobqueue.commands.fail_job import fail_job
from jobqueue.commands.lease_jobs import lease_jobs, promote_scheduled_jobs
from jobqueue.commands.requeue_expired import requeue_expired_jobs
from jobqueue.db.models import QueueJob, to_domain_job, to_received_job
from jobqueue.db.session import create_session_factory, init_models
from jobqueue.domain.errors import ProviderClosedError
from jobqueue.domain.models import EnqueueOptions, Job, QueueStats, ReceivedJob
from jobqueue.domain.retry import DEFAULT_BACKOFF_BASE_MS, DEFAULT_BACKOFF_MAX_MS
from jobqueue.domain.states import JobStatus
from jobqueue.providers.base import QueueProvider, error_message

logger = logging.getLogger(__name__)


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


class DatabaseQueueProvider(QueueProvider):
    """
    Durable queue backed by SQLAlchemy.

    Claims are made with row locks plus an expiring lease per job, so several
    worker processes can share one database. A lease that outlives its
    visibility timeout is reaped on the next receive and counts as a failed
    attempt.
    """

    name = "database"

    def __init__(
        self,
        engine: AsyncEngine,
        poll_interval_ms: int = 1000,
        visibility_timeout_seconds: int = 30,
        max_history_size: int = 1000,
        backoff_base_ms: int = DEFAULT_BACKOFF_BASE_MS,
        backoff_max_ms: int = DEFAULT_BACKOFF_MAX_MS,
        create_tables: bool = True,
        worker_id: Optional[str] = None,
    ):
        self.engine = engine
        self.session_factory = create_session_factory(engine)
        self.poll_interval_ms = poll_interval_ms
        self.visibility_timeout_seconds = visibility_timeout_seconds
        self.max_history_size = max_history_size
        self.backoff_base_ms = backoff_base_ms
        self.backoff_max_ms = backoff_max_ms
        self.create_tables = create_tables
        self.worker_id = worker_id or default_worker_id()

        self._closing = asyncio.Event()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def initialize(self) -> None:
        if self.create_tables:
            await init_models(self.engine)
            logger.info("Queue tables ready")

    async def enqueue(self, type: str, payload: Any, options: Optional[EnqueueOptions] = None) -> Job:
        if self._closed:
            raise ProviderClosedError(self.name)

        options = options or EnqueueOptions()

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    row, created = await enqueue_job(session, type, payload, options)
                    job = to_domain_job(row)
        except IntegrityError:
            # Lost an insert race on the deduplication index; return the winner
            if not options.deduplication_key:
                raise
            async with self.session_factory() as session:
                row = await find_active_by_dedup_key(session, options.deduplication_key)
                if row is None:
                    raise
                job = to_domain_job(row)
            created = False

        if created:
            JOBS_ENQUEUED.labels(type=type).inc()
            logger.debug(f"Enqueued job {job.id} (type={type}, status={job.status})")
        else:
            logger.debug(f"Deduplicated job {job.id} (key={options.deduplication_key})")
        return job

    async def receive(self, max_messages: int = 1, wait_timeout_seconds: float = 20) -> list[ReceivedJob]:
        if self._closed or max_messages < 1:
            return []

        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(wait_timeout_seconds, 0)

        while not self._closed:
            jobs = await self._lease(max_messages)
            if jobs:
                return jobs

            remaining = deadline - loop.time()
            if remaining <= 0:
                return []

            try:
                async with asyncio.timeout(min(self.poll_interval_ms / 1000, remaining)):
                    await self._closing.wait()
            except TimeoutError:
                pass

        return []

    async def acknowledge(self, receipt_handle: str) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                await complete_job(session, receipt_handle)
                await trim_completed_history(session, self.max_history_size)

    async def fail(self, receipt_handle: str, error: BaseException | str) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                job = await fail_job(
                    session,
                    receipt_handle,
                    error_message(error),
                    self.backoff_base_ms,
                    self.backoff_max_ms,
                )
                if job.status == JobStatus.PENDING:
                    logger.info(f"Job {job.id} failed (attempt {job.attempts}/{job.max_retries}), retry at {job.available_at}")

    async def cancel_scheduled(self, job_id: str) -> bool:
        async with self.session_factory() as session:
            async with session.begin():
                cancelled = await cancel_scheduled_job(session, job_id)
        if cancelled:
            logger.info(f"Cancelled scheduled job {job_id}")
        return cancelled

    async def get_job(self, job_id: str) -> Optional[Job]:
        async with self.session_factory() as session:
            row = await session.get(QueueJob, job_id)
            return to_domain_job(row) if row else None

    async def get_stats(self) -> QueueStats:
        stats = QueueStats()
        async with self.session_factory() as session:
            stmt = select(QueueJob.status, func.count()).group_by(QueueJob.status)
            for status, count in (await session.execute(stmt)).all():
                stats.increment(JobStatus(status), count)
        return stats

    async def list_jobs(self, status: Optional[JobStatus] = None, limit: int = 100) -> list[Job]:
        stmt = select(QueueJob).order_by(QueueJob.created_at.asc()).limit(limit)
        if status is not None:
            stmt = stmt.where(QueueJob.status == status)
        async with self.session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [to_domain_job(row) for row in rows]

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._closing.set()
        await self.engine.dispose()
        logger.info("Database queue provider closed")

    async def _lease(self, max_messages: int) -> list[ReceivedJob]:
        async with self.session_factory() as session:
            async with session.begin():
                recovered = await requeue_expired_jobs(session)
                if recovered:
                    logger.warning(f"Recovered {recovered} job(s) with expired leases")
                await promote_scheduled_jobs(session)

                leased = await lease_jobs(
                    session,
                    max_messages,
                    self.visibility_timeout_seconds,
                    worker_id=self.worker_id,
                )
                return [to_received_job(job, lease) for job, lease in leased]
