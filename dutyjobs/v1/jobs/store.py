"""
Job store: the in-memory source of truth for job state, written through to
a durable repository.
"""

import asyncio
import logging
import uuid
import weakref
from collections.abc import Callable, Iterable
from typing import Any

from dutyjobs.config.settings import Settings
from dutyjobs.v1.core.exceptions import (
    NotFoundError,
    PersistenceError,
    StaleTransitionError,
)
from dutyjobs.v1.jobs.events import JobEvent, JobEventBus, event_for_transition
from dutyjobs.v1.jobs.models import JobPriority, JobStatus, JobType
from dutyjobs.v1.jobs.persistence import JobRepository
from dutyjobs.v1.jobs.schemas import (
    Job,
    JobListFilters,
    JobMetadata,
    JobProgress,
    JobTimestamps,
    utcnow,
)
from dutyjobs.v1.jobs.states import validate_transition

logger = logging.getLogger(__name__)

JobPatch = Callable[[Job], None]


class JobStore:
    """
    Single writer of job state.

    Every mutation runs under a per-job lock, is applied to a copy, persisted,
    and only then swapped into the map. A failed durable write therefore never
    exposes the change. Reads return deep copies.

    Lifecycle events are published on ``events`` once a change is committed.
    """

    def __init__(
        self,
        repository: JobRepository,
        settings: Settings,
        events: JobEventBus | None = None,
    ):
        self.repository = repository
        self.settings = settings
        self.events = events or JobEventBus()
        self._jobs: dict[str, Job] = {}
        # a lock lives only while some writer holds or waits on it
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )
        self._changed = asyncio.Condition()

    async def load(self) -> int:
        """Hydrate the in-memory map from the durable store."""
        self._jobs.clear()
        for status in JobStatus:
            for job in await self.repository.query_by_status(status):
                self._jobs[job.id] = job

        logger.info("Job store loaded", extra={"job_count": len(self._jobs)})
        return len(self._jobs)

    async def create(
        self,
        job_type: JobType,
        workspace_id: str,
        payload: dict[str, Any],
        priority: JobPriority,
        max_retries: int,
        estimated_duration: float | None = None,
    ) -> Job:
        """Create a pending job and persist it."""
        now = utcnow()
        job = Job(
            id=str(uuid.uuid4()),
            type=job_type,
            workspace_id=workspace_id,
            status=JobStatus.PENDING,
            priority=priority,
            progress=JobProgress(),
            metadata=JobMetadata(
                payload=payload,
                max_retries=max_retries,
                estimated_duration=estimated_duration,
            ),
            timestamps=JobTimestamps(created=now, updated=now),
            version=1,
        )

        await self._persist(job)
        self._jobs[job.id] = job
        await self._notify()
        await self.events.publish(JobEvent.JOB_ADDED, job)

        return job.model_copy(deep=True)

    def get(self, job_id: str, workspace_id: str | None = None) -> Job:
        """Get a job snapshot, optionally scoped to a workspace."""
        job = self._jobs.get(job_id)
        if job is None or (workspace_id is not None and job.workspace_id != workspace_id):
            raise NotFoundError("Job not found", details={"job_id": job_id})
        return job.model_copy(deep=True)

    def list_jobs(
        self,
        filters: JobListFilters | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Job], int]:
        """List jobs newest first. Returns the requested page and the total match count."""
        filters = filters or JobListFilters()
        jobs: Iterable[Job] = self._jobs.values()

        if filters.status:
            statuses = set(filters.status)
            jobs = (job for job in jobs if job.status in statuses)
        if filters.type:
            jobs = (job for job in jobs if job.type == filters.type)
        if filters.workspace_id is not None:
            jobs = (job for job in jobs if job.workspace_id == filters.workspace_id)
        if filters.priority:
            jobs = (job for job in jobs if job.priority == filters.priority)

        matched = sorted(
            jobs, key=lambda job: (job.timestamps.created, job.id), reverse=True
        )
        page = matched[offset : offset + limit]
        return [job.model_copy(deep=True) for job in page], len(matched)

    def jobs_with_status(self, *statuses: JobStatus) -> list[Job]:
        """Snapshots of jobs in any of ``statuses``, oldest first."""
        matched = [job for job in self._jobs.values() if job.status in statuses]
        matched.sort(key=lambda job: job.timestamps.created)
        return [job.model_copy(deep=True) for job in matched]

    def __len__(self) -> int:
        return len(self._jobs)

    async def apply_transition(
        self,
        job_id: str,
        new_status: JobStatus,
        *,
        expected_status: JobStatus | None = None,
        patch: JobPatch | None = None,
    ) -> Job:
        """
        Move a job to ``new_status`` atomically.

        The transition is validated against the status the job has at write
        time. When ``expected_status`` is given and the job is no longer in it,
        StaleTransitionError is raised and nothing changes.
        """
        async with self._lock(job_id):
            current = self._require(job_id)
            self._check_expected(current, expected_status)
            validate_transition(current.status, new_status)

            candidate = current.model_copy(deep=True)
            candidate.status = new_status
            if patch is not None:
                patch(candidate)

            committed = await self._commit(candidate)

        logger.debug(
            "Job transitioned",
            extra={
                "job_id": job_id,
                "from_status": current.status.value,
                "to_status": new_status.value,
            },
        )

        event = event_for_transition(current.status, new_status)
        if event is not None:
            await self.events.publish(event, committed)
        return committed

    async def update(
        self,
        job_id: str,
        patch: JobPatch,
        *,
        expected_status: JobStatus | None = None,
    ) -> Job:
        """Apply a mutation that does not change the job's status."""
        async with self._lock(job_id):
            current = self._require(job_id)
            self._check_expected(current, expected_status)

            candidate = current.model_copy(deep=True)
            patch(candidate)
            if candidate.status != current.status:
                raise ValueError("Status changes must go through apply_transition")

            return await self._commit(candidate)

    async def update_progress(
        self,
        job_id: str,
        *,
        completed: int,
        failed: int = 0,
        total: int | None = None,
        current: str | None = None,
    ) -> Job:
        """
        Record handler progress for a running job.

        Counters only move forward and ``completed + failed`` may never
        exceed ``total``; a report that breaks either rule raises ValueError.
        """

        def patch(job: Job) -> None:
            previous = job.progress
            new_total = previous.total if total is None else total

            if completed < previous.completed or failed < previous.failed:
                raise ValueError(
                    f"Progress counters cannot decrease "
                    f"(completed {previous.completed}->{completed}, "
                    f"failed {previous.failed}->{failed})"
                )
            if new_total < 0 or completed + failed > new_total:
                raise ValueError(
                    f"completed + failed ({completed + failed}) exceeds total ({new_total})"
                )

            job.progress = JobProgress(
                total=new_total, completed=completed, failed=failed, current=current
            )

        updated = await self.update(job_id, patch, expected_status=JobStatus.RUNNING)
        await self.events.publish(JobEvent.PROGRESS_UPDATE, updated)
        return updated

    async def wait_for(
        self,
        job_id: str,
        statuses: Iterable[JobStatus],
        timeout: float | None = None,
    ) -> Job:
        """Wait until the job reaches one of ``statuses`` and return it."""
        wanted = frozenset(statuses)

        async def _wait() -> None:
            async with self._changed:
                await self._changed.wait_for(
                    lambda: self._require(job_id).status in wanted
                )

        await asyncio.wait_for(_wait(), timeout)
        return self.get(job_id)

    def _lock(self, job_id: str) -> asyncio.Lock:
        lock = self._locks.get(job_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[job_id] = lock
        return lock

    def _require(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise NotFoundError("Job not found", details={"job_id": job_id})
        return job

    @staticmethod
    def _check_expected(current: Job, expected_status: JobStatus | None) -> None:
        if expected_status is not None and current.status != expected_status:
            raise StaleTransitionError(
                f"Job is {current.status.value}, expected {expected_status.value}",
                details={
                    "job_id": current.id,
                    "status": current.status.value,
                    "expected": expected_status.value,
                },
            )

    async def _commit(self, candidate: Job) -> Job:
        candidate.version += 1
        candidate.timestamps.updated = utcnow()

        await self._persist(candidate)
        self._jobs[candidate.id] = candidate
        await self._notify()

        return candidate.model_copy(deep=True)

    async def _persist(self, job: Job) -> None:
        """Write the job durably, retrying with exponential backoff."""
        attempts = self.settings.persistence_retry_attempts

        for attempt in range(1, attempts + 1):
            try:
                await self.repository.upsert(job)
                return
            except Exception as e:
                if attempt == attempts:
                    logger.error(
                        "Job persistence failed",
                        extra={"job_id": job.id, "attempts": attempts, "error": str(e)},
                    )
                    raise PersistenceError(
                        "Failed to persist job state",
                        details={"job_id": job.id, "attempts": attempts},
                    ) from e

                delay_ms = min(
                    self.settings.persistence_retry_max_ms,
                    self.settings.persistence_retry_base_ms * (2 ** (attempt - 1)),
                )
                logger.warning(
                    "Job persistence attempt failed, retrying",
                    extra={
                        "job_id": job.id,
                        "attempt": attempt,
                        "retry_in_ms": delay_ms,
                        "error": str(e),
                    },
                )
                await asyncio.sleep(delay_ms / 1000)

    async def _notify(self) -> None:
        async with self._changed:
            self._changed.notify_all()
