from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter, Response

from jobqueue.domain.models import QueueStats

router = APIRouter()

# Metrics Definitions
JOBS_ENQUEUED = Counter('jobqueue_jobs_enqueued_total', 'Total jobs created, deduplicated enqueues excluded', ['type'])
JOBS_PROCESSED = Counter('jobqueue_jobs_processed_total', 'Total jobs processed by workers', ['type', 'result'])  # result=succeeded|failed
JOB_DURATION = Histogram('jobqueue_job_duration_seconds', 'Handler execution time', buckets=[0.05, 0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 120.0])

JOBS_INFLIGHT = Gauge(
    "jobqueue_jobs_inflight",
    "Number of jobs currently being handled by this process"
)

QUEUE_DEPTH = Gauge('jobqueue_queue_depth', 'Number of jobs per status', ['status'])

SCHEDULER_ENQUEUED = Counter(
    "jobqueue_scheduler_enqueued_total",
    "Total jobs enqueued by recurring definitions",
    ["name"]
)


def observe_queue_stats(stats: QueueStats) -> None:
    for status, count in stats.as_dict().items():
        QUEUE_DEPTH.labels(status=status).set(count)


@router.get("/metrics")
async def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
