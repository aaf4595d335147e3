"""
Job executor: runs a handler for one admitted job and turns its outcome
into state transitions.
"""

import asyncio
import time
from typing import Any

from dutyjobs.config.logging import bind_job_context, get_logger
from dutyjobs.config.settings import Settings
from dutyjobs.v1.core.exceptions import (
    DutyJobsException,
    JobCancelledError,
    JobHandlerError,
    PersistenceError,
    StaleTransitionError,
)
from dutyjobs.v1.core.registries import JobHandler, JobRegistry
from dutyjobs.v1.jobs.models import JobStatus
from dutyjobs.v1.jobs.retry import RetryPolicy
from dutyjobs.v1.jobs.schemas import Job, JobError, utcnow
from dutyjobs.v1.jobs.store import JobPatch, JobStore

logger = get_logger(__name__)


def _mark_cancelled(job: Job) -> None:
    job.timestamps.completed = utcnow()
    job.progress.current = None


class JobContext:
    """
    Handle given to a job handler while it runs.

    Handlers report progress through it and call ``checkpoint()`` at safe
    points, which is where cancellation and pause requests take effect.
    """

    def __init__(self, store: JobStore, job: Job, supports_pause: bool = False):
        self._store = store
        self._supports_pause = supports_pause
        self.job_id = job.id
        self.job_type = job.type
        self.workspace_id = job.workspace_id
        self.retry_count = job.metadata.retry_count
        # set by the executor when the run has a timeout
        self.deadline: asyncio.Timeout | None = None

    async def report_progress(
        self,
        completed: int,
        failed: int = 0,
        total: int | None = None,
        current: str | None = None,
    ) -> None:
        """Record cumulative progress; ``total`` may be set or raised at any report."""
        await self._store.update_progress(
            self.job_id,
            completed=completed,
            failed=failed,
            total=total,
            current=current,
        )

    @property
    def cancel_requested(self) -> bool:
        job = self._store.get(self.job_id)
        return job.cancel_requested or job.status == JobStatus.CANCELLED

    def raise_if_cancelled(self) -> None:
        if self.cancel_requested:
            raise JobCancelledError(self.job_id)

    async def checkpoint(self) -> None:
        """Honor pending cancel and pause requests."""
        self.raise_if_cancelled()

        job = self._store.get(self.job_id)
        if job.pause_requested and self._supports_pause:
            await self._suspend()

    async def _suspend(self) -> None:
        """Park the handler until resumed. The timeout clock stops meanwhile."""

        def mark_paused(job: Job) -> None:
            job.pause_requested = False
            job.timestamps.paused = utcnow()

        await self._store.apply_transition(
            self.job_id,
            JobStatus.PAUSED,
            expected_status=JobStatus.RUNNING,
            patch=mark_paused,
        )
        logger.info("Job paused")

        remaining = self._stop_clock()
        job = await self._store.wait_for(
            self.job_id, {JobStatus.RUNNING, JobStatus.CANCELLED}
        )
        self._restart_clock(remaining)

        if job.status == JobStatus.CANCELLED:
            raise JobCancelledError(self.job_id)

        logger.info("Job resumed")

    def _stop_clock(self) -> float | None:
        deadline = self.deadline
        if deadline is None or deadline.when() is None or deadline.expired():
            return None
        loop = asyncio.get_running_loop()
        remaining = max(0.0, deadline.when() - loop.time())
        deadline.reschedule(None)
        return remaining

    def _restart_clock(self, remaining: float | None) -> None:
        if remaining is None or self.deadline is None:
            return
        loop = asyncio.get_running_loop()
        self.deadline.reschedule(loop.time() + remaining)


class JobExecutor:
    """
    Runs handlers and converts their outcomes.

    - return value -> completed (result stored in metadata)
    - JobHandlerError -> failure handed to the retry policy
    - timeout -> failure with code TIMEOUT
    - any other exception -> failure logged with traceback, since it points
      at a bug rather than an expected business failure
    - cancellation requested -> cancelled, whatever the handler returned

    Outcome transitions are retried until the durable write goes through, so
    an outage of the backing store delays a job's outcome but never loses it.
    """

    def __init__(
        self,
        store: JobStore,
        registry: JobRegistry,
        retry_policy: RetryPolicy,
        settings: Settings,
    ):
        self.store = store
        self.registry = registry
        self.retry_policy = retry_policy
        self.settings = settings

    async def execute(self, job: Job) -> Job:
        """Run an admitted (running) job to its next resting state."""
        with bind_job_context(job.id, job.type.value, job.workspace_id):
            return await self._execute(job)

    async def _execute(self, job: Job) -> Job:
        handler = self.registry.get(job.type.value)
        ctx = JobContext(
            self.store, job, supports_pause=getattr(handler, "supports_pause", False)
        )
        timeout = self._timeout_for(job, handler)
        started = time.monotonic()

        logger.info("Processing job started", retry_count=job.metadata.retry_count)

        try:
            payload = handler.payload_schema.model_validate(job.metadata.payload)
            async with asyncio.timeout(timeout) as deadline:
                ctx.deadline = deadline
                result = await handler.handle(ctx, payload)

        except JobCancelledError:
            logger.info("Job processing cancelled")
            return await self._finish_cancelled(job.id)

        except asyncio.CancelledError:
            logger.warning("Job interrupted by engine shutdown")
            await self._requeue_interrupted(job.id)
            raise

        except TimeoutError:
            logger.warning("Job timed out", timeout_s=timeout)
            error = JobError(
                message=f"Job exceeded its timeout of {timeout}s",
                code="TIMEOUT",
                details={"timeout_s": timeout},
            )
            return await self._handle_failure(job.id, error)

        except JobHandlerError as e:
            logger.warning("Job handler failed", error=e.message, code=e.code)
            error = JobError(message=e.message, code=e.code, details=e.details)
            return await self._handle_failure(job.id, error)

        except Exception as e:
            logger.exception("Job handler raised unexpectedly", error=str(e))
            error = JobError(
                message=str(e) or e.__class__.__name__,
                code="UNEXPECTED_ERROR",
                details={"exception": e.__class__.__name__},
            )
            return await self._handle_failure(job.id, error)

        duration = round(time.monotonic() - started, 3)
        return await self._complete(job.id, result, duration)

    def _timeout_for(self, job: Job, handler: JobHandler) -> float | None:
        configured = self.settings.job_timeouts_s.get(job.type.value)
        if configured is not None:
            return configured
        return getattr(handler, "timeout_s", None)

    async def _record(
        self,
        job_id: str,
        new_status: JobStatus,
        *,
        expected_status: JobStatus | None = None,
        patch: JobPatch | None = None,
    ) -> Job:
        """Apply an outcome transition, waiting out a failing backing store."""
        delay_s = self.settings.persistence_retry_max_ms / 1000
        while True:
            try:
                return await self.store.apply_transition(
                    job_id, new_status, expected_status=expected_status, patch=patch
                )
            except PersistenceError:
                logger.error(
                    "Could not record job outcome, retrying",
                    to_status=new_status.value,
                    retry_in_s=delay_s,
                )
                await asyncio.sleep(delay_s)

    async def _complete(
        self, job_id: str, result: dict[str, Any] | None, duration: float
    ) -> Job:
        current = self.store.get(job_id)
        if current.cancel_requested or current.status == JobStatus.CANCELLED:
            return await self._finish_cancelled(job_id)

        def mark_completed(job: Job) -> None:
            job.metadata.result = result
            job.metadata.actual_duration = duration
            job.timestamps.completed = utcnow()
            job.progress.current = None
            job.pause_requested = False
            job.error = None

        try:
            completed = await self._record(
                job_id,
                JobStatus.COMPLETED,
                expected_status=JobStatus.RUNNING,
                patch=mark_completed,
            )
        except StaleTransitionError:
            logger.warning("Job changed state before completion was recorded")
            return self.store.get(job_id)

        logger.info("Processing job completed successfully", duration_s=duration)
        return completed

    async def _handle_failure(self, job_id: str, error: JobError) -> Job:
        """Record a failed run and apply the retry policy."""
        current = self.store.get(job_id)
        if current.cancel_requested or current.status == JobStatus.CANCELLED:
            return await self._finish_cancelled(job_id)

        decision = self.retry_policy.decide(
            current.metadata.retry_count, current.metadata.max_retries
        )

        def mark_failed(job: Job) -> None:
            job.error = error
            job.metadata.retry_count = decision.retry_count
            job.progress.current = None

        try:
            await self._record(
                job_id,
                JobStatus.FAILED,
                expected_status=JobStatus.RUNNING,
                patch=mark_failed,
            )
        except StaleTransitionError:
            # paused or cancelled under us; resume or cancel takes it from there
            logger.warning(
                "Job changed state before its failure was recorded",
                error_code=error.code,
            )
            return self.store.get(job_id)

        if decision.retry:
            run_at = decision.run_at(utcnow())

            def requeue(job: Job) -> None:
                # transient failures stay invisible apart from retry_count
                job.error = None
                job.reset_run_state()
                job.run_at = run_at

            requeued = await self._record(
                job_id,
                JobStatus.PENDING,
                expected_status=JobStatus.FAILED,
                patch=requeue,
            )
            logger.info(
                "Job scheduled for retry",
                retry_count=decision.retry_count,
                next_run_at=run_at.isoformat(),
            )
            return requeued

        def bury(job: Job) -> None:
            job.timestamps.completed = utcnow()

        dead = await self._record(
            job_id,
            JobStatus.DEAD_LETTER,
            expected_status=JobStatus.FAILED,
            patch=bury,
        )
        logger.error(
            "Job moved to dead letter",
            retry_count=decision.retry_count,
            error_code=error.code,
            error=error.message,
        )
        return dead

    async def _finish_cancelled(self, job_id: str) -> Job:
        current = self.store.get(job_id)
        if current.status == JobStatus.CANCELLED:
            return current
        return await self._record(job_id, JobStatus.CANCELLED, patch=_mark_cancelled)

    async def _requeue_interrupted(self, job_id: str) -> None:
        """Put a run cut short by shutdown back in line, as recovery would."""
        current = self.store.get(job_id)
        if current.status not in (JobStatus.RUNNING, JobStatus.PAUSED):
            return

        try:
            if current.cancel_requested:
                await self.store.apply_transition(
                    job_id, JobStatus.CANCELLED, patch=_mark_cancelled
                )
            else:
                await self.store.apply_transition(
                    job_id, JobStatus.PENDING, patch=Job.reset_run_state
                )
        except DutyJobsException:
            logger.exception("Failed to requeue interrupted job")
