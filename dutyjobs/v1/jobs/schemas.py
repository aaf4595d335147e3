"""
Job engine Pydantic schemas: the job record itself and the API shapes around it.
"""

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field, computed_field, model_validator

from dutyjobs.v1.jobs.models import JobPriority, JobStatus, JobType


def utcnow() -> datetime:
    return datetime.now(UTC)


class JobProgress(BaseModel):
    """Sub-units of work done inside a job."""

    total: int = Field(default=0, ge=0)
    completed: int = Field(default=0, ge=0)
    failed: int = Field(default=0, ge=0)
    current: str | None = None

    @model_validator(mode="after")
    def check_counts(self) -> "JobProgress":
        if self.completed + self.failed > self.total:
            raise ValueError(
                f"completed + failed ({self.completed + self.failed}) "
                f"exceeds total ({self.total})"
            )
        return self

    @computed_field  # type: ignore[prop-decorator]
    @property
    def percentage(self) -> float:
        if self.total <= 0:
            return 0.0
        return min(100.0, round((self.completed + self.failed) / self.total * 100, 2))


class JobMetadata(BaseModel):
    """Handler payload plus engine-owned bookkeeping."""

    payload: dict[str, Any] = Field(default_factory=dict)
    result: dict[str, Any] | None = None
    retry_count: int = Field(default=0, ge=0)
    max_retries: int = Field(default=3, ge=0)
    estimated_duration: float | None = None
    actual_duration: float | None = None


class JobTimestamps(BaseModel):
    created: datetime = Field(default_factory=utcnow)
    started: datetime | None = None
    completed: datetime | None = None
    paused: datetime | None = None
    resumed: datetime | None = None
    updated: datetime = Field(default_factory=utcnow)


class JobError(BaseModel):
    message: str
    code: str
    details: dict[str, Any] = Field(default_factory=dict)


class Job(BaseModel):
    """
    A single asynchronous unit of work.

    Instances handed out by the engine are snapshots: mutating them has no
    effect on engine state.
    """

    id: str
    type: JobType
    workspace_id: str
    status: JobStatus = JobStatus.PENDING
    priority: JobPriority = JobPriority.MEDIUM
    progress: JobProgress = Field(default_factory=JobProgress)
    metadata: JobMetadata = Field(default_factory=JobMetadata)
    timestamps: JobTimestamps = Field(default_factory=JobTimestamps)
    error: JobError | None = None
    run_at: datetime | None = None
    cancel_requested: bool = False
    pause_requested: bool = False
    version: int = 0

    def reset_run_state(self) -> None:
        """Clear per-run state so the job starts its next run from scratch."""
        self.progress = JobProgress()
        self.pause_requested = False
        self.run_at = None
        self.timestamps.started = None
        self.timestamps.paused = None
        self.timestamps.resumed = None


class JobEnqueueRequest(BaseModel):
    """Schema for enqueueing jobs via API."""

    type: str = Field(..., description="Job type")
    metadata: dict[str, Any] = Field(
        default_factory=dict, description="Type-specific job parameters"
    )
    priority: JobPriority | None = Field(default=None, description="Queue priority")


class JobEnqueueResponse(BaseModel):
    job_id: str
    status: JobStatus


class JobRetryRequest(BaseModel):
    priority: JobPriority | None = Field(
        default=None, description="Override the job's original priority"
    )


class JobListFilters(BaseModel):
    """Schema for job listing filters."""

    status: list[JobStatus] | None = Field(
        default=None, description="Filter by job status"
    )
    type: JobType | None = Field(default=None, description="Filter by job type")
    workspace_id: str | None = Field(default=None, description="Filter by workspace")
    priority: JobPriority | None = Field(default=None, description="Filter by priority")


class JobListResponse(BaseModel):
    """Schema for job list API response."""

    jobs: list[Job]
    total: int
    limit: int
    offset: int


class JobStatsResponse(BaseModel):
    """Schema for job statistics."""

    total_jobs: int
    by_status: dict[str, int]
    by_type: dict[str, int]
    queue_depth: int  # pending + running + paused
    dead_letter: int
    avg_runtime_seconds: float | None = None


class QueueStatusResponse(BaseModel):
    pending: int
    delayed: int
    running: int
    paused: int
    max_concurrency: int
    total_jobs: int
