"""
Job management API endpoints.

Thin adapter over the injected JobEngine; every call is scoped to the
caller's workspace.
"""

import logging
from typing import Any

from fastapi import APIRouter, Depends, Query, Request

from dutyjobs.v1.core.exceptions import create_success_response
from dutyjobs.v1.core.security import Principal, PrincipalDep
from dutyjobs.v1.jobs.models import JobPriority, JobStatus, JobType
from dutyjobs.v1.jobs.schemas import (
    JobEnqueueRequest,
    JobEnqueueResponse,
    JobListFilters,
    JobRetryRequest,
)
from dutyjobs.v1.jobs.service import JobEngine

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/jobs", tags=["jobs"])


def get_job_engine(request: Request) -> JobEngine:
    """Dependency returning the engine created at application startup."""
    return request.app.state.job_engine


JobEngineDep = Depends(get_job_engine)


def _dump(model: Any) -> dict[str, Any]:
    return model.model_dump(mode="json")


@router.post("", response_model=dict)
async def enqueue_job(
    job_request: JobEnqueueRequest,
    principal: Principal = PrincipalDep,
    engine: JobEngine = JobEngineDep,
) -> dict[str, Any]:
    """Enqueue a new background job."""

    job = await engine.add_job(
        job_request.type,
        job_request.metadata,
        job_request.priority,
        workspace_id=principal.workspace_id,
    )

    logger.info(
        "Job enqueued via API",
        extra={
            "job_id": job.id,
            "type": job.type.value,
            "workspace_id": principal.workspace_id,
            "user_id": principal.user_id,
        },
    )

    response = JobEnqueueResponse(job_id=job.id, status=job.status)
    return create_success_response(data=_dump(response))


@router.get("", response_model=dict)
async def list_jobs(
    status: list[JobStatus] | None = Query(
        default=None, description="Filter by status"
    ),
    type: JobType | None = Query(default=None, description="Filter by job type"),
    priority: JobPriority | None = Query(default=None, description="Filter by priority"),
    limit: int = Query(default=50, ge=1, le=1000, description="Maximum results"),
    offset: int = Query(default=0, ge=0, description="Results offset"),
    principal: Principal = PrincipalDep,
    engine: JobEngine = JobEngineDep,
) -> dict[str, Any]:
    """List jobs with filtering and pagination, newest first."""

    filters = JobListFilters(status=status, type=type, priority=priority)
    page = engine.list_jobs(
        filters, limit=limit, offset=offset, workspace_id=principal.workspace_id
    )
    return create_success_response(data=_dump(page))


@router.get("/stats/overview", response_model=dict)
async def get_job_stats(
    principal: Principal = PrincipalDep,
    engine: JobEngine = JobEngineDep,
) -> dict[str, Any]:
    """Get job statistics for the workspace."""

    stats = engine.get_job_stats(workspace_id=principal.workspace_id)
    return create_success_response(data=_dump(stats))


@router.get("/queue/status", response_model=dict)
async def get_queue_status(
    principal: Principal = PrincipalDep,
    engine: JobEngine = JobEngineDep,
) -> dict[str, Any]:
    """Get scheduler queue status."""

    return create_success_response(data=_dump(engine.get_queue_status()))


@router.get("/{job_id}", response_model=dict)
async def get_job(
    job_id: str,
    principal: Principal = PrincipalDep,
    engine: JobEngine = JobEngineDep,
) -> dict[str, Any]:
    """Get a specific job by ID."""

    job = engine.get_job(job_id, workspace_id=principal.workspace_id)
    return create_success_response(data=_dump(job))


@router.post("/{job_id}/retry", response_model=dict)
async def retry_job(
    job_id: str,
    retry_request: JobRetryRequest | None = None,
    principal: Principal = PrincipalDep,
    engine: JobEngine = JobEngineDep,
) -> dict[str, Any]:
    """Retry a failed, dead-lettered or cancelled job."""

    priority = retry_request.priority if retry_request else None
    job = await engine.retry_job(
        job_id, workspace_id=principal.workspace_id, priority=priority
    )

    logger.info(
        "Job retried via API",
        extra={
            "job_id": job_id,
            "workspace_id": principal.workspace_id,
            "user_id": principal.user_id,
        },
    )

    return create_success_response(data=_dump(job))


@router.post("/{job_id}/cancel", response_model=dict)
async def cancel_job(
    job_id: str,
    principal: Principal = PrincipalDep,
    engine: JobEngine = JobEngineDep,
) -> dict[str, Any]:
    """Cancel a pending, running or paused job."""

    job = await engine.cancel_job(job_id, workspace_id=principal.workspace_id)

    logger.info(
        "Job canceled via API",
        extra={
            "job_id": job_id,
            "workspace_id": principal.workspace_id,
            "user_id": principal.user_id,
        },
    )

    return create_success_response(data=_dump(job))


@router.post("/{job_id}/pause", response_model=dict)
async def pause_job(
    job_id: str,
    principal: Principal = PrincipalDep,
    engine: JobEngine = JobEngineDep,
) -> dict[str, Any]:
    """Ask a running job to pause at its next checkpoint."""

    job = await engine.pause_job(job_id, workspace_id=principal.workspace_id)
    return create_success_response(data=_dump(job))


@router.post("/{job_id}/resume", response_model=dict)
async def resume_job(
    job_id: str,
    principal: Principal = PrincipalDep,
    engine: JobEngine = JobEngineDep,
) -> dict[str, Any]:
    """Resume a paused job."""

    job = await engine.resume_job(job_id, workspace_id=principal.workspace_id)
    return create_success_response(data=_dump(job))
