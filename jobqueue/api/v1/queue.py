from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Query, status
from pydantic import BaseModel, ConfigDict

from jobqueue.api.deps import Runtime
from jobqueue.domain.states import JobStatus

router = APIRouter()

class JobOptionsResponse(BaseModel):
    max_retries: int
    timeout_ms: int
    priority: int
    deduplication_key: Optional[str] = None
    model_config = ConfigDict(from_attributes=True)

class JobResponse(BaseModel):
    id: str
    type: str
    status: JobStatus
    payload: Any = None
    options: JobOptionsResponse
    attempts: int
    created_at: datetime
    scheduled_for: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_error: Optional[str] = None
    model_config = ConfigDict(from_attributes=True)

class WorkerStatsResponse(BaseModel):
    processed: int
    succeeded: int
    failed: int
    active: int
    running: bool
    model_config = ConfigDict(from_attributes=True)

class StatsResponse(BaseModel):
    provider: str
    pending: int
    scheduled: int
    processing: int
    completed: int
    failed: int
    dead: int
    total: int
    worker: Optional[WorkerStatsResponse] = None

class RecurringJobResponse(BaseModel):
    name: str
    type: str
    schedule: str
    timezone: str
    enabled: bool
    next_run_at: Optional[datetime] = None
    last_run_at: Optional[datetime] = None
    last_error: Optional[str] = None
    model_config = ConfigDict(from_attributes=True)

@router.get("/stats", response_model=StatsResponse)
async def queue_stats(runtime: Runtime):
    stats = await runtime.get_stats()
    worker = runtime.worker.stats() if runtime.worker else None
    return StatsResponse(
        provider=runtime.provider.name,
        total=stats.total,
        worker=WorkerStatsResponse.model_validate(worker) if worker else None,
        **stats.as_dict(),
    )

@router.get("/jobs", response_model=list[JobResponse])
async def list_jobs(
    runtime: Runtime,
    status: Optional[JobStatus] = None,
    limit: int = Query(default=100, ge=1, le=1000),
):
    return await runtime.list_jobs(status=status, limit=limit)

@router.get("/jobs/{job_id}", response_model=JobResponse)
async def get_job(job_id: str, runtime: Runtime):
    job = await runtime.get_job(job_id)
    if not job:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return job

@router.get("/handlers")
async def list_handlers(runtime: Runtime):
    return runtime.registry.describe()

@router.get("/recurring", response_model=list[RecurringJobResponse])
async def list_recurring(runtime: Runtime):
    return runtime.scheduler.list_recurring()
