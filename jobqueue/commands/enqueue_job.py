from typing import Any, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from jobqueue.db.models import JobEventLog, QueueJob
from jobqueue.domain.models import EnqueueOptions, utcnow
from jobqueue.domain.states import JobEvent, JobStatus

ACTIVE_STATUSES = (JobStatus.PENDING, JobStatus.SCHEDULED, JobStatus.PROCESSING, JobStatus.FAILED)


async def find_active_by_dedup_key(session: AsyncSession, deduplication_key: str) -> Optional[QueueJob]:
    stmt = select(QueueJob).where(
        QueueJob.deduplication_key == deduplication_key,
        QueueJob.status.in_(ACTIVE_STATUSES),
    ).limit(1)
    return await session.scalar(stmt)


async def enqueue_job(
    session: AsyncSession,
    type: str,
    payload: Any,
    options: EnqueueOptions,
) -> tuple[QueueJob, bool]:
    """
    Inserts a job, or returns the live job holding the same deduplication key.
    Returns (job, created).
    """
    if options.deduplication_key:
        existing = await find_active_by_dedup_key(session, options.deduplication_key)
        if existing:
            session.add(JobEventLog(
                job_id=existing.id,
                event_type=JobEvent.DEDUPLICATED,
                meta={"deduplication_key": options.deduplication_key},
            ))
            await session.flush()
            return existing, False

    now = utcnow()
    job_options = options.to_job_options()
    available_at = options.visible_at(now)
    delayed = available_at > now

    job = QueueJob(
        type=type,
        payload=payload,
        status=JobStatus.SCHEDULED if delayed else JobStatus.PENDING,
        priority=job_options.priority,
        max_retries=job_options.max_retries,
        timeout_ms=job_options.timeout_ms,
        deduplication_key=job_options.deduplication_key,
        attempts=0,
        created_at=now,
        updated_at=now,
        available_at=available_at,
        scheduled_for=available_at if (delayed or options.scheduled_for) else None,
    )
    session.add(job)
    await session.flush()

    session.add(JobEventLog(
        job_id=job.id,
        event_type=JobEvent.CREATED,
        timestamp=now,
        meta={"type": type, "status": str(job.status)},
    ))
    await session.flush()
    return job, True


async def cancel_scheduled_job(session: AsyncSession, job_id: str) -> bool:
    """
    Deletes a job that is still SCHEDULED, together with its event log.
    Its deduplication key is freed with the row.
    """
    stmt = select(QueueJob).where(
        QueueJob.id == job_id,
        QueueJob.status == JobStatus.SCHEDULED,
    ).with_for_update()
    job = await session.scalar(stmt)
    if job is None:
        return False

    await session.execute(delete(JobEventLog).where(JobEventLog.job_id == job.id))
    await session.execute(delete(QueueJob).where(QueueJob.id == job.id))
    return True
