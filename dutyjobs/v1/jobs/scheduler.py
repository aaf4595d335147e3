"""
In-process job scheduler.

Admits pending jobs from the ready queue into a bounded pool of asyncio
tasks, one task per running job.
"""

import asyncio
import logging

from dutyjobs.config.logging import bind_job_context
from dutyjobs.config.settings import Settings
from dutyjobs.v1.core.exceptions import (
    InvalidStateError,
    NotFoundError,
    PersistenceError,
)
from dutyjobs.v1.jobs.executor import JobExecutor
from dutyjobs.v1.jobs.models import JobStatus
from dutyjobs.v1.jobs.queue import ReadyQueue
from dutyjobs.v1.jobs.schemas import Job, utcnow
from dutyjobs.v1.jobs.store import JobStore

logger = logging.getLogger(__name__)


class JobScheduler:
    """
    Admission loop for the worker pool.

    The loop wakes when a job is enqueued, when a slot frees up, when the
    earliest backoff expires, and on a fixed tick. It never holds more than
    ``max_concurrency`` job tasks. A paused job keeps its task, and so its
    slot, until it resumes or is cancelled.
    """

    def __init__(self, store: JobStore, executor: JobExecutor, settings: Settings):
        self.store = store
        self.executor = executor
        self.settings = settings
        self.max_concurrency = settings.job_concurrency
        self.queue = ReadyQueue()
        self.running = False
        self._tick_s = settings.job_poll_interval_ms / 1000
        self._wakeup = asyncio.Event()
        self._tasks: dict[str, asyncio.Task[Job]] = {}
        self._loop_task: asyncio.Task[None] | None = None

    def enqueue(self, job: Job) -> None:
        """Make a pending job schedulable."""
        if job.status != JobStatus.PENDING:
            raise ValueError(f"Only pending jobs can be enqueued, got {job.status.value}")
        self.queue.push(job, utcnow())
        self._wakeup.set()

    def discard(self, job_id: str) -> bool:
        return self.queue.discard(job_id)

    def is_active(self, job_id: str) -> bool:
        """Check if a job currently holds a worker slot."""
        return job_id in self._tasks

    @property
    def active_count(self) -> int:
        return len(self._tasks)

    async def start(self) -> None:
        """Start the admission loop."""
        if self.running:
            raise RuntimeError("Scheduler is already running")

        self.running = True
        self._loop_task = asyncio.create_task(self._run_loop(), name="job-scheduler")

        logger.info(
            "Job scheduler started",
            extra={
                "max_concurrency": self.max_concurrency,
                "poll_interval_ms": self.settings.job_poll_interval_ms,
                "queued": len(self.queue),
            },
        )

    async def stop(self, timeout: float | None = None) -> None:
        """
        Stop admitting jobs and wait for running ones.

        Runs still going after ``timeout`` seconds are cancelled; the executor
        puts them back to pending.
        """
        if not self.running:
            return

        self.running = False
        self._wakeup.set()
        if self._loop_task is not None:
            await self._loop_task
            self._loop_task = None

        tasks = list(self._tasks.values())
        if tasks:
            logger.info(
                "Waiting for running jobs", extra={"active_jobs": len(tasks)}
            )
            _, pending = await asyncio.wait(tasks, timeout=timeout)

            if pending:
                logger.warning(
                    "Cancelling jobs still running at shutdown",
                    extra={"active_jobs": len(pending)},
                )
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)

        logger.info("Job scheduler stopped")

    async def _run_loop(self) -> None:
        while self.running:
            self._wakeup.clear()

            try:
                self._admit()
            except Exception:
                logger.exception("Error in scheduler loop")

            wait_s = self._tick_s
            next_due = self.queue.next_due_in(utcnow())
            if next_due is not None:
                wait_s = min(wait_s, next_due)

            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=wait_s)
            except TimeoutError:
                pass

    def _admit(self) -> None:
        """Fill free slots with the best eligible pending jobs."""
        while self.running and len(self._tasks) < self.max_concurrency:
            job_id = self.queue.pop(utcnow())
            if job_id is None:
                return
            if job_id in self._tasks:
                # previous run still finishing; requeued once its task is done
                continue

            # The transition is awaited inside the task so the loop never
            # blocks on persistence; the slot is taken right away.
            task = asyncio.create_task(self._run(job_id), name=f"job-{job_id}")
            self._tasks[job_id] = task
            task.add_done_callback(lambda t, job_id=job_id: self._on_done(job_id, t))

    async def _run(self, job_id: str) -> Job | None:
        with bind_job_context(job_id):
            return await self._admit_and_execute(job_id)

    async def _admit_and_execute(self, job_id: str) -> Job | None:
        def mark_started(job: Job) -> None:
            job.timestamps.started = utcnow()
            job.run_at = None

        try:
            job = await self.store.apply_transition(
                job_id,
                JobStatus.RUNNING,
                expected_status=JobStatus.PENDING,
                patch=mark_started,
            )
        except (InvalidStateError, NotFoundError):
            # cancelled or otherwise moved on while queued
            logger.debug("Skipping job no longer pending")
            return None
        except PersistenceError:
            logger.error("Could not admit job, requeueing")
            return self.store.get(job_id)

        return await self.executor.execute(job)

    def _on_done(self, job_id: str, task: asyncio.Task) -> None:
        self._tasks.pop(job_id, None)

        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "Job task crashed",
                extra={"job_id": job_id, "error": str(task.exception())},
            )

        # retries, shutdown interruptions and manual retries racing a
        # finishing run all leave the job pending
        if self.running:
            try:
                current = self.store.get(job_id)
            except NotFoundError:
                current = None
            if current is not None and current.status == JobStatus.PENDING:
                self.queue.push(current, utcnow())

        self._wakeup.set()
