"""
Startup recovery for jobs orphaned by a previous process.
"""

import logging

from dutyjobs.v1.jobs.models import JobStatus
from dutyjobs.v1.jobs.schemas import Job, utcnow
from dutyjobs.v1.jobs.store import JobStore

logger = logging.getLogger(__name__)


async def recover_orphaned_jobs(store: JobStore) -> list[Job]:
    """
    Requeue jobs left ``running`` by a process that is gone.

    Must run after ``store.load()`` and before the scheduler starts. An
    interrupted run is not a failure, so ``retry_count`` is left alone and
    the job restarts from scratch. A job whose cancellation was already
    requested is cancelled instead.

    Returns the recovered jobs in their new state.
    """
    recovered = []

    for job in store.jobs_with_status(JobStatus.RUNNING):
        if job.cancel_requested:

            def mark_cancelled(candidate: Job) -> None:
                candidate.timestamps.completed = utcnow()
                candidate.progress.current = None

            updated = await store.apply_transition(
                job.id,
                JobStatus.CANCELLED,
                expected_status=JobStatus.RUNNING,
                patch=mark_cancelled,
            )
        else:
            updated = await store.apply_transition(
                job.id,
                JobStatus.PENDING,
                expected_status=JobStatus.RUNNING,
                patch=Job.reset_run_state,
            )

        logger.warning(
            "Recovered orphaned job",
            extra={
                "job_id": job.id,
                "job_type": job.type.value,
                "workspace_id": job.workspace_id,
                "retry_count": job.metadata.retry_count,
                "recovered_status": updated.status.value,
            },
        )
        recovered.append(updated)

    if recovered:
        logger.info("Job recovery complete", extra={"recovered": len(recovered)})

    return recovered
