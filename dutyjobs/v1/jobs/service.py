"""
Job engine service: the producer-facing surface of the job engine.

``JobEngine`` owns the store, handler registry, retry policy, executor and
scheduler. The API layer and handler registration receive the engine by
injection; nothing here is a module-level singleton.
"""

import logging
from collections.abc import Callable
from statistics import mean
from typing import Any

from dutyjobs.config.settings import PersistenceBackend, Settings
from dutyjobs.infra.database import Database
from dutyjobs.v1.core.exceptions import (
    InvalidJobTypeError,
    InvalidStateError,
    StaleTransitionError,
    ValidationError,
)
from dutyjobs.v1.core.registries import JobHandler, JobRegistry
from dutyjobs.v1.jobs.events import JobEventBus, JobListener
from dutyjobs.v1.jobs.executor import JobExecutor
from dutyjobs.v1.jobs.models import JobPriority, JobStatus, JobType
from dutyjobs.v1.jobs.payloads import validate_payload
from dutyjobs.v1.jobs.persistence import JobRepository, build_repository
from dutyjobs.v1.jobs.recovery import recover_orphaned_jobs
from dutyjobs.v1.jobs.retry import RetryPolicy
from dutyjobs.v1.jobs.scheduler import JobScheduler
from dutyjobs.v1.jobs.schemas import (
    Job,
    JobListFilters,
    JobListResponse,
    JobStatsResponse,
    QueueStatusResponse,
    utcnow,
)
from dutyjobs.v1.jobs.states import CANCELLABLE, MANUAL_RETRY_FROM, SETTLED
from dutyjobs.v1.jobs.store import JobStore

logger = logging.getLogger(__name__)


def _parse_job_type(job_type: JobType | str) -> JobType:
    try:
        return JobType(job_type)
    except ValueError:
        raise InvalidJobTypeError(
            f"Unknown job type: {job_type}",
            details={"type": str(job_type), "supported": [t.value for t in JobType]},
        ) from None


class JobEngine:
    """In-process background job engine."""

    def __init__(
        self,
        settings: Settings,
        repository: JobRepository,
        database: Database | None = None,
        retry_policy: RetryPolicy | None = None,
    ):
        self.settings = settings
        self.database = database
        self.registry = JobRegistry()
        self.events = JobEventBus()
        self.store = JobStore(repository, settings, self.events)
        self.retry_policy = retry_policy or RetryPolicy.from_settings(settings)
        self.executor = JobExecutor(self.store, self.registry, self.retry_policy, settings)
        self.scheduler = JobScheduler(self.store, self.executor, settings)

    @property
    def running(self) -> bool:
        return self.scheduler.running

    # Handler registration

    def register_handler(self, job_type: JobType | str, handler: JobHandler) -> None:
        """Register the handler for a job type. Handlers are registered once, at startup."""
        parsed = _parse_job_type(job_type)
        self.registry.register(parsed.value, handler)
        logger.debug("Job handler registered", extra={"job_type": parsed.value})

    def freeze_handlers(self) -> None:
        self.registry.freeze()

    def subscribe(self, listener: JobListener) -> Callable[[], None]:
        """
        Listen to job lifecycle events.

        ``listener(event, job)`` is awaited after every committed status change
        and progress report, with a snapshot of the job. Exceptions it raises
        are logged and otherwise ignored. Returns an unsubscribe function.
        """
        return self.events.subscribe(listener)

    # Lifecycle

    async def start(self) -> None:
        """
        Bootstrap and start scheduling.

        Loads persisted jobs, recovers jobs orphaned by a previous process,
        queues everything pending and only then starts admitting work.

        Jobs persisted as paused were suspended on purpose and stay paused.
        They hold no worker slot and become schedulable again, from scratch,
        as soon as ``resume_job`` is called.
        """
        if self.running:
            raise RuntimeError("Job engine is already running")

        if self.database is not None and self.settings.environment == "development":
            await self.database.create_all()

        await self.store.load()
        await recover_orphaned_jobs(self.store)

        pending = self.store.jobs_with_status(JobStatus.PENDING)
        for job in pending:
            self.scheduler.enqueue(job)

        self.freeze_handlers()
        await self.scheduler.start()

        logger.info(
            "Job engine started",
            extra={
                "jobs_loaded": len(self.store),
                "jobs_queued": len(pending),
                "registered_handlers": self.registry.list(),
            },
        )

    async def stop(self) -> None:
        """Stop scheduling; runs that outlive the shutdown timeout go back to pending."""
        await self.scheduler.stop(timeout=self.settings.job_shutdown_timeout_s)
        if self.database is not None:
            await self.database.close()
        logger.info("Job engine stopped")

    # Producer operations

    async def add_job(
        self,
        job_type: JobType | str,
        metadata: dict[str, Any] | None = None,
        priority: JobPriority | None = None,
        *,
        workspace_id: str | None = None,
    ) -> Job:
        """
        Admit a new job.

        The owning workspace comes from ``workspace_id`` or, failing that,
        from ``metadata["workspace_id"]``.

        Raises:
            InvalidJobTypeError: unknown type or no handler registered for it
            ValidationError: metadata does not match the type's payload schema
        """
        metadata = metadata or {}
        parsed = _parse_job_type(job_type)
        if parsed.value not in self.registry:
            raise InvalidJobTypeError(
                f"No handler registered for job type: {parsed.value}",
                details={"type": parsed.value},
            )

        workspace_id = workspace_id or metadata.get("workspace_id")
        if not workspace_id:
            raise ValidationError(
                "Jobs must belong to a workspace", details={"field": "workspace_id"}
            )

        handler = self.registry.get(parsed.value)
        payload = validate_payload(
            parsed, metadata, schema=getattr(handler, "payload_schema", None)
        )

        job = await self.store.create(
            job_type=parsed,
            workspace_id=workspace_id,
            payload=payload,
            priority=priority or JobPriority.MEDIUM,
            max_retries=self.settings.job_max_retries,
            estimated_duration=self._estimate_duration(parsed),
        )
        self.scheduler.enqueue(job)

        logger.info(
            "Job enqueued",
            extra={
                "job_id": job.id,
                "type": parsed.value,
                "priority": job.priority.value,
                "workspace_id": workspace_id,
            },
        )
        return job

    def get_job(self, job_id: str, workspace_id: str | None = None) -> Job:
        return self.store.get(job_id, workspace_id)

    def list_jobs(
        self,
        filters: JobListFilters | None = None,
        limit: int = 50,
        offset: int = 0,
        workspace_id: str | None = None,
    ) -> JobListResponse:
        """List job snapshots, newest first."""
        filters = filters or JobListFilters()
        if workspace_id is not None:
            filters = filters.model_copy(update={"workspace_id": workspace_id})

        jobs, total = self.store.list_jobs(filters, limit=limit, offset=offset)
        return JobListResponse(jobs=jobs, total=total, limit=limit, offset=offset)

    async def retry_job(
        self,
        job_id: str,
        workspace_id: str | None = None,
        priority: JobPriority | None = None,
    ) -> Job:
        """
        Re-admit a failed, dead-lettered or cancelled job.

        Resets ``retry_count`` and clears the error. The job keeps its
        original priority unless ``priority`` overrides it.
        """
        current = self.store.get(job_id, workspace_id)
        if current.status not in MANUAL_RETRY_FROM:
            raise InvalidStateError(
                f"Cannot retry a {current.status.value} job",
                details={"job_id": job_id, "status": current.status.value},
            )

        def reset(job: Job) -> None:
            job.metadata.retry_count = 0
            job.metadata.result = None
            job.metadata.actual_duration = None
            job.error = None
            job.cancel_requested = False
            job.reset_run_state()
            job.timestamps.completed = None
            if priority is not None:
                job.priority = priority

        job = await self.store.apply_transition(
            job_id, JobStatus.PENDING, expected_status=current.status, patch=reset
        )
        self.scheduler.enqueue(job)

        logger.info(
            "Job retried",
            extra={
                "job_id": job_id,
                "previous_status": current.status.value,
                "priority": job.priority.value,
                "workspace_id": job.workspace_id,
            },
        )
        return job

    async def cancel_job(self, job_id: str, workspace_id: str | None = None) -> Job:
        """
        Cancel a job.

        Pending and paused jobs are cancelled immediately. For a running job
        cancellation is advisory: the flag is set and the handler stops at
        its next checkpoint.
        """
        current = self.store.get(job_id, workspace_id)
        if current.status not in CANCELLABLE:
            raise InvalidStateError(
                f"Cannot cancel a {current.status.value} job",
                details={"job_id": job_id, "status": current.status.value},
            )

        def mark_cancelled(job: Job) -> None:
            job.cancel_requested = True
            job.timestamps.completed = utcnow()
            job.progress.current = None

        def request_cancel(job: Job) -> None:
            job.cancel_requested = True

        try:
            if current.status == JobStatus.RUNNING:
                job = await self.store.update(
                    job_id, request_cancel, expected_status=JobStatus.RUNNING
                )
            else:
                job = await self.store.apply_transition(
                    job_id,
                    JobStatus.CANCELLED,
                    expected_status=current.status,
                    patch=mark_cancelled,
                )
                self.scheduler.discard(job_id)
        except StaleTransitionError:
            # admitted or suspended in the meantime; decide again
            return await self.cancel_job(job_id, workspace_id)

        logger.info(
            "Job cancel requested" if job.status == JobStatus.RUNNING else "Job cancelled",
            extra={
                "job_id": job_id,
                "previous_status": current.status.value,
                "workspace_id": job.workspace_id,
            },
        )
        return job

    async def pause_job(self, job_id: str, workspace_id: str | None = None) -> Job:
        """Ask a running job to suspend at its next checkpoint."""
        current = self.store.get(job_id, workspace_id)
        if current.status != JobStatus.RUNNING:
            raise InvalidStateError(
                f"Cannot pause a {current.status.value} job",
                details={"job_id": job_id, "status": current.status.value},
            )

        handler = self.registry.get(current.type.value)
        if not getattr(handler, "supports_pause", False):
            raise InvalidStateError(
                f"Job type {current.type.value} does not support pausing",
                details={"job_id": job_id, "type": current.type.value},
            )

        def request_pause(job: Job) -> None:
            job.pause_requested = True

        job = await self.store.update(
            job_id, request_pause, expected_status=JobStatus.RUNNING
        )
        logger.info("Job pause requested", extra={"job_id": job_id})
        return job

    async def resume_job(self, job_id: str, workspace_id: str | None = None) -> Job:
        """
        Resume a paused job.

        A handler suspended in this process picks up where it stopped. A job
        restored paused from persistence has no live handler and is queued
        again from scratch.
        """
        current = self.store.get(job_id, workspace_id)
        if current.status != JobStatus.PAUSED:
            raise InvalidStateError(
                f"Cannot resume a {current.status.value} job",
                details={"job_id": job_id, "status": current.status.value},
            )

        if self.scheduler.is_active(job_id):

            def mark_resumed(job: Job) -> None:
                job.timestamps.resumed = utcnow()

            job = await self.store.apply_transition(
                job_id,
                JobStatus.RUNNING,
                expected_status=JobStatus.PAUSED,
                patch=mark_resumed,
            )
        else:

            def requeue(job: Job) -> None:
                job.reset_run_state()
                job.timestamps.resumed = utcnow()

            job = await self.store.apply_transition(
                job_id,
                JobStatus.PENDING,
                expected_status=JobStatus.PAUSED,
                patch=requeue,
            )
            self.scheduler.enqueue(job)

        logger.info(
            "Job resumed", extra={"job_id": job_id, "status": job.status.value}
        )
        return job

    async def wait_for_job(
        self,
        job_id: str,
        timeout: float | None = None,
        workspace_id: str | None = None,
    ) -> Job:
        """Wait until the job is completed, cancelled or dead-lettered."""
        self.store.get(job_id, workspace_id)
        return await self.store.wait_for(job_id, SETTLED, timeout)

    # Reporting

    def get_queue_status(self) -> QueueStatusResponse:
        return QueueStatusResponse(
            pending=self.scheduler.queue.ready_count,
            delayed=self.scheduler.queue.delayed_count,
            running=len(self.store.jobs_with_status(JobStatus.RUNNING)),
            paused=len(self.store.jobs_with_status(JobStatus.PAUSED)),
            max_concurrency=self.scheduler.max_concurrency,
            total_jobs=len(self.store),
        )

    def get_job_stats(self, workspace_id: str | None = None) -> JobStatsResponse:
        """Get job statistics, optionally scoped to a workspace."""
        jobs = self.store.jobs_with_status(*JobStatus)
        if workspace_id is not None:
            jobs = [job for job in jobs if job.workspace_id == workspace_id]

        by_status: dict[str, int] = {}
        by_type: dict[str, int] = {}
        for job in jobs:
            by_status[job.status.value] = by_status.get(job.status.value, 0) + 1
            by_type[job.type.value] = by_type.get(job.type.value, 0) + 1

        # Queue depth (pending + running + paused)
        queue_depth = sum(
            by_status.get(status.value, 0)
            for status in (JobStatus.PENDING, JobStatus.RUNNING, JobStatus.PAUSED)
        )

        runtimes = [
            job.metadata.actual_duration
            for job in jobs
            if job.status == JobStatus.COMPLETED
            and job.metadata.actual_duration is not None
        ]

        return JobStatsResponse(
            total_jobs=len(jobs),
            by_status=by_status,
            by_type=by_type,
            queue_depth=queue_depth,
            dead_letter=by_status.get(JobStatus.DEAD_LETTER.value, 0),
            avg_runtime_seconds=round(mean(runtimes), 3) if runtimes else None,
        )

    def _estimate_duration(self, job_type: JobType) -> float | None:
        durations = [
            job.metadata.actual_duration
            for job in self.store.jobs_with_status(JobStatus.COMPLETED)
            if job.type == job_type and job.metadata.actual_duration is not None
        ]
        return round(mean(durations), 3) if durations else None


def create_job_engine(
    settings: Settings, repository: JobRepository | None = None
) -> JobEngine:
    """Build an engine with the repository selected by ``settings``."""
    if repository is not None:
        return JobEngine(settings, repository)

    database = None
    if settings.job_persistence == PersistenceBackend.DATABASE:
        database = Database(settings)
    return JobEngine(settings, build_repository(settings, database), database=database)
