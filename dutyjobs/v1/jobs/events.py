"""
Job lifecycle events.

Listeners (notifications, audit trails, websocket fan-out) subscribe to the
engine and are awaited after every committed change. A failing listener is
logged and never affects the job.
"""

import logging
from collections.abc import Awaitable, Callable
from enum import Enum

from dutyjobs.v1.jobs.models import JobStatus
from dutyjobs.v1.jobs.schemas import Job

logger = logging.getLogger(__name__)


class JobEvent(str, Enum):
    JOB_ADDED = "job_added"
    JOB_STARTED = "job_started"
    PROGRESS_UPDATE = "progress_update"
    JOB_PAUSED = "job_paused"
    JOB_RESUMED = "job_resumed"
    JOB_COMPLETED = "job_completed"
    JOB_RETRY = "job_retry"
    JOB_REQUEUED = "job_requeued"
    # retries exhausted, the job is now in dead letter
    JOB_FAILED = "job_failed"
    JOB_CANCELLED = "job_cancelled"


JobListener = Callable[[JobEvent, Job], Awaitable[None]]


def event_for_transition(previous: JobStatus, new: JobStatus) -> JobEvent | None:
    """Name the event a committed status change stands for, if any."""
    if new == JobStatus.RUNNING:
        return JobEvent.JOB_RESUMED if previous == JobStatus.PAUSED else JobEvent.JOB_STARTED
    if new == JobStatus.PENDING:
        if previous == JobStatus.RUNNING:
            return JobEvent.JOB_REQUEUED
        if previous == JobStatus.PAUSED:
            return JobEvent.JOB_RESUMED
        return JobEvent.JOB_RETRY
    return {
        JobStatus.PAUSED: JobEvent.JOB_PAUSED,
        JobStatus.COMPLETED: JobEvent.JOB_COMPLETED,
        JobStatus.DEAD_LETTER: JobEvent.JOB_FAILED,
        JobStatus.CANCELLED: JobEvent.JOB_CANCELLED,
    }.get(new)


class JobEventBus:
    """Fan-out of lifecycle events to async listeners, in subscription order."""

    def __init__(self) -> None:
        self._listeners: list[JobListener] = []

    def subscribe(self, listener: JobListener) -> Callable[[], None]:
        """Add a listener. Returns a function that removes it again."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def publish(self, event: JobEvent, job: Job) -> None:
        for listener in list(self._listeners):
            try:
                await listener(event, job.model_copy(deep=True))
            except Exception:
                logger.exception(
                    "Job event listener failed",
                    extra={"job_id": job.id, "job_event": event.value},
                )
