import logging
from datetime import timedelta
from typing import Optional
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from jobqueue.db.models import JobEventLog, JobLease, QueueJob
from jobqueue.domain.models import utcnow
from jobqueue.domain.states import JobEvent, JobStatus

logger = logging.getLogger(__name__)


async def promote_scheduled_jobs(session: AsyncSession) -> int:
    """UPDATE queue_jobs SET status='pending' WHERE status='scheduled' AND available_at <= now"""
    now = utcnow()
    stmt = (
        update(QueueJob)
        .where(
            QueueJob.status == JobStatus.SCHEDULED,
            QueueJob.available_at <= now,
        )
        .values(status=JobStatus.PENDING, updated_at=now)
    )
    result = await session.execute(stmt)
    return result.rowcount or 0


async def lease_jobs(
    session: AsyncSession,
    max_messages: int,
    visibility_timeout_seconds: int,
    worker_id: Optional[str] = None,
) -> list[tuple[QueueJob, JobLease]]:
    """
    Atomically claims up to max_messages visible pending jobs.

    Rows are locked with FOR UPDATE SKIP LOCKED so concurrent receivers in
    other processes never claim the same job. Ordering is priority ascending
    (lower value first) then FIFO.
    """
    now = utcnow()

    stmt = (
        select(QueueJob)
        .where(
            QueueJob.status == JobStatus.PENDING,
            QueueJob.available_at <= now,
        )
        .order_by(QueueJob.priority.asc(), QueueJob.available_at.asc(), QueueJob.created_at.asc())
        .limit(max_messages)
        .with_for_update(skip_locked=True)
    )
    rows = (await session.execute(stmt)).scalars().all()

    leased = []
    for job in rows:
        # The lease must outlive the job's own timeout
        duration = max(visibility_timeout_seconds, job.timeout_ms / 1000)

        job.status = JobStatus.PROCESSING
        job.attempts += 1
        job.started_at = now
        job.updated_at = now

        lease = JobLease(
            job_id=job.id,
            receipt_handle=str(uuid4()),
            worker_id=worker_id,
            expires_at=now + timedelta(seconds=duration),
            created_at=now,
        )
        session.add(lease)
        session.add(JobEventLog(
            job_id=job.id,
            event_type=JobEvent.RECEIVED,
            timestamp=now,
            meta={"receipt_handle": lease.receipt_handle, "attempt": job.attempts, "worker_id": worker_id},
        ))
        leased.append((job, lease))

    if leased:
        await session.flush()
        logger.debug(f"Leased {len(leased)} job(s): {[job.id for job, _ in leased]}")

    return leased
