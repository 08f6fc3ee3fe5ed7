import logging

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from jobqueue.db.models import JobEventLog, JobLease, QueueJob
from jobqueue.domain.errors import StaleReceiptError
from jobqueue.domain.models import utcnow
from jobqueue.domain.states import JobEvent, JobStatus

logger = logging.getLogger(__name__)


async def get_leased_job(session: AsyncSession, receipt_handle: str) -> tuple[QueueJob, JobLease]:
    """
    Resolves a receipt handle to its processing job, locking both rows.
    Raises StaleReceiptError if the lease is gone (acked, failed or reaped).
    """
    stmt = select(JobLease).where(JobLease.receipt_handle == receipt_handle).with_for_update()
    lease = await session.scalar(stmt)
    if not lease:
        raise StaleReceiptError(receipt_handle)

    job = await session.get(QueueJob, lease.job_id, with_for_update=True)
    if not job or job.status != JobStatus.PROCESSING:
        raise StaleReceiptError(receipt_handle)

    return job, lease


async def complete_job(session: AsyncSession, receipt_handle: str) -> QueueJob:
    """
    Marks a job as COMPLETED and releases its lease.
    The deduplication key is released implicitly: the unique index only covers live jobs.
    """
    job, lease = await get_leased_job(session, receipt_handle)
    now = utcnow()

    job.status = JobStatus.COMPLETED
    job.completed_at = now
    job.updated_at = now

    await session.delete(lease)

    session.add(JobEventLog(
        job_id=job.id,
        event_type=JobEvent.COMPLETED,
        timestamp=now,
        meta={"receipt_handle": receipt_handle, "attempts": job.attempts},
    ))

    await session.flush()
    return job


async def trim_completed_history(session: AsyncSession, max_history_size: int) -> int:
    """Deletes the oldest completed jobs beyond max_history_size. Returns number removed."""
    count_stmt = select(func.count()).select_from(QueueJob).where(QueueJob.status == JobStatus.COMPLETED)
    completed = (await session.execute(count_stmt)).scalar() or 0

    excess = completed - max_history_size
    if excess <= 0:
        return 0

    oldest = (
        select(QueueJob.id)
        .where(QueueJob.status == JobStatus.COMPLETED)
        .order_by(QueueJob.completed_at.asc())
        .limit(excess)
    )
    ids = list((await session.execute(oldest)).scalars().all())

    await session.execute(delete(JobEventLog).where(JobEventLog.job_id.in_(ids)))
    await session.execute(delete(QueueJob).where(QueueJob.id.in_(ids)))

    logger.debug(f"Evicted {len(ids)} completed job(s) from history")
    return len(ids)
