import logging

from sqlalchemy.ext.asyncio import AsyncSession

from jobqueue.commands.complete_job import get_leased_job
from jobqueue.db.models import JobEventLog, QueueJob
from jobqueue.domain.models import utcnow
from jobqueue.domain.retry import calculate_next_run
from jobqueue.domain.states import JobEvent, JobStatus

logger = logging.getLogger(__name__)


async def fail_job(
    session: AsyncSession,
    receipt_handle: str,
    error: str,
    backoff_base_ms: int,
    backoff_max_ms: int,
) -> QueueJob:
    """
    Marks a job as failed: back to PENDING with a backoff delay, or DEAD when
    its attempts are exhausted. Attempts were already counted on receive.
    """
    job, lease = await get_leased_job(session, receipt_handle)
    now = utcnow()

    job.last_error = error
    job.updated_at = now

    if job.attempts >= job.max_retries:
        job.status = JobStatus.DEAD
        job.completed_at = now
        event_type = JobEvent.DEAD_LETTERED
        logger.warning(f"Job {job.id} (type={job.type}) is dead after {job.attempts} attempt(s): {error}")
    else:
        job.status = JobStatus.PENDING
        job.available_at = calculate_next_run(job.attempts, backoff_base_ms, backoff_max_ms, now=now)
        event_type = JobEvent.RETRIED

    await session.delete(lease)

    session.add(JobEventLog(
        job_id=job.id,
        event_type=event_type,
        timestamp=now,
        meta={
            "error": error,
            "attempts": job.attempts,
            "max": job.max_retries,
            "receipt_handle": receipt_handle,
        },
    ))

    await session.flush()
    return job
