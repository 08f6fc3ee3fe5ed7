from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from jobqueue.db.models import JobEventLog, JobLease, QueueJob
from jobqueue.domain.models import utcnow
from jobqueue.domain.states import JobEvent, JobStatus

LEASE_EXPIRED_ERROR = "Visibility timeout expired"


async def requeue_expired_jobs(session: AsyncSession, limit: int = 100) -> int:
    """
    Reclaims jobs whose visibility window ran out while still in flight.

    The expired attempt counts as a failure: the job becomes visible again
    immediately, or dead when it was already on its last attempt. Returns the
    number of leases reclaimed.
    """
    now = utcnow()
    leases = (
        await session.execute(
            select(JobLease)
            .where(JobLease.expires_at < now)
            .order_by(JobLease.expires_at)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
    ).scalars().all()

    for lease in leases:
        job = await session.get(QueueJob, lease.job_id, with_for_update=True)
        worker_id = lease.worker_id
        await session.delete(lease)
        if job is None or job.status != JobStatus.PROCESSING:
            continue

        job.last_error = LEASE_EXPIRED_ERROR
        job.updated_at = now
        exhausted = job.attempts >= job.max_retries
        if exhausted:
            job.status = JobStatus.DEAD
            job.completed_at = now
        else:
            job.status = JobStatus.PENDING
            job.available_at = now

        session.add(
            JobEventLog(
                job_id=job.id,
                event_type=JobEvent.DEAD_LETTERED if exhausted else JobEvent.LEASE_EXPIRED,
                timestamp=now,
                meta={"reason": "lease_expired", "worker_id": worker_id, "attempts": job.attempts},
            )
        )

    if leases:
        await session.flush()
    return len(leases)
