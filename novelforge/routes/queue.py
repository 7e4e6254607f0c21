"""
Queue API Routes

Job creation, status, explicit retry of failed jobs, queue statistics
and the in-memory log buffer.
"""

from typing import Optional, List, Dict, Any

from fastapi import APIRouter, HTTPException, Depends, Query
from pydantic import BaseModel

from novelforge.container import ServiceContainer
from novelforge.jobs.models import JobStatus, JobType
from novelforge.routes import get_services
from novelforge.utils.logging import LogLevel, get_log_buffer


router = APIRouter(prefix="/api/queue", tags=["queue"])


# =============================================================================
# Request/Response Models
# =============================================================================

class CreateJobRequest(BaseModel):
    type: JobType
    target_id: str


class CreateJobResponse(BaseModel):
    job_id: str
    status: str


class QueueStatsResponse(BaseModel):
    pending: int
    running: int
    completed: int
    failed: int
    total: int
    worker_state: str
    current_job: Optional[str] = None
    paused_until: Optional[str] = None


# =============================================================================
# Job Routes
# =============================================================================

@router.get("/stats", response_model=QueueStatsResponse)
async def get_queue_stats(services: ServiceContainer = Depends(get_services)):
    stats = await services.queue.get_queue_stats()
    paused_until = services.worker.paused_until
    return QueueStatsResponse(
        **stats,
        worker_state=services.worker.state.value,
        current_job=services.worker.current_job,
        paused_until=paused_until.isoformat() if paused_until else None,
    )


@router.post("/jobs", response_model=CreateJobResponse, status_code=201)
async def create_job(
    request: CreateJobRequest,
    services: ServiceContainer = Depends(get_services)
):
    job_id = await services.queue.create_job(request.type, request.target_id)
    return CreateJobResponse(job_id=job_id, status="pending")


@router.get("/jobs")
async def get_recent_jobs(
    limit: int = Query(20, ge=1, le=200),
    status: Optional[JobStatus] = None,
    services: ServiceContainer = Depends(get_services)
):
    return {"jobs": await services.queue.get_recent_jobs(limit=limit, status=status)}


@router.get("/jobs/{job_id}")
async def get_job(job_id: str, services: ServiceContainer = Depends(get_services)):
    status = await services.queue.get_status(job_id)
    if status is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return status


@router.get("/jobs/{job_id}/logs")
async def get_job_logs(job_id: str, services: ServiceContainer = Depends(get_services)):
    """Log trail of one job, oldest first."""
    if await services.queue.get_status(job_id) is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return {"job_id": job_id, "logs": get_log_buffer().get_job_trail(job_id)}


@router.post("/jobs/{job_id}/retry")
async def retry_job(job_id: str, services: ServiceContainer = Depends(get_services)):
    """Move a failed job back to pending."""
    status = await services.queue.get_status(job_id)
    if status is None:
        raise HTTPException(status_code=404, detail="Job not found")

    if not await services.queue.retry_job(job_id):
        raise HTTPException(
            status_code=409,
            detail=f"Only failed jobs can be retried (job is {status['status']})"
        )
    return {"success": True, "job_id": job_id, "status": "pending"}


@router.get("/targets/{target_id}/jobs")
async def get_target_jobs(target_id: str, services: ServiceContainer = Depends(get_services)):
    jobs: List[Dict[str, Any]] = await services.queue.get_jobs_for_target(target_id)
    return {"target_id": target_id, "jobs": jobs}


# ===== Logs =====

@router.get("/logs")
async def get_logs(
    limit: int = Query(100, ge=1, le=500),
    level: Optional[str] = Query(None, description="Filter by level (debug, info, warning, error, critical)"),
    source: Optional[str] = Query(None, description="Filter by source"),
    target_id: Optional[str] = Query(None, description="Filter by chapter/book id"),
    job_id: Optional[str] = Query(None, description="Filter by job id")
):
    """Get recent log entries from the in-memory buffer."""
    log_buffer = get_log_buffer()

    level_filter = None
    if level:
        try:
            level_filter = LogLevel(level.lower())
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid log level: {level}")

    logs = log_buffer.get_recent(
        limit=limit, level=level_filter, source=source, target_id=target_id, job_id=job_id
    )
    return {
        "logs": logs,
        "stats": log_buffer.get_stats()
    }
