"""
Durable mirror for job state.

The engine only needs three operations from its backing store: ``upsert``,
``get`` and ``query_by_status``. The table layout belongs to the
``JobRecord`` model and its migration.
"""

import logging
from datetime import UTC, datetime
from typing import Any, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dutyjobs.config.settings import PersistenceBackend, Settings
from dutyjobs.infra.database import Database
from dutyjobs.v1.jobs.models import JobRecord, JobStatus
from dutyjobs.v1.jobs.schemas import (
    Job,
    JobError,
    JobMetadata,
    JobProgress,
    JobTimestamps,
)

logger = logging.getLogger(__name__)


class JobRepository(Protocol):
    """Protocol for the durable store behind the job engine."""

    async def upsert(self, job: Job) -> None:
        """Insert or replace the stored copy of ``job``."""
        ...

    async def get(self, job_id: str) -> Job | None:
        ...

    async def query_by_status(self, status: JobStatus) -> list[Job]:
        ...


def _aware(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def job_to_values(job: Job) -> dict[str, Any]:
    """Flatten a job into JobRecord column values."""
    return {
        "id": job.id,
        "type": job.type.value,
        "workspace_id": job.workspace_id,
        "status": job.status.value,
        "priority": job.priority.value,
        "progress": job.progress.model_dump(mode="json", exclude={"percentage"}),
        "job_metadata": job.metadata.model_dump(mode="json"),
        "error": job.error.model_dump(mode="json") if job.error else None,
        "run_at": job.run_at,
        "cancel_requested": job.cancel_requested,
        "pause_requested": job.pause_requested,
        "version": job.version,
        "created_at": job.timestamps.created,
        "started_at": job.timestamps.started,
        "completed_at": job.timestamps.completed,
        "paused_at": job.timestamps.paused,
        "resumed_at": job.timestamps.resumed,
        "updated_at": job.timestamps.updated,
    }


def record_to_job(record: JobRecord) -> Job:
    """Rebuild a job from its stored row."""
    return Job(
        id=record.id,
        type=record.type,
        workspace_id=record.workspace_id,
        status=record.status,
        priority=record.priority,
        progress=JobProgress.model_validate(record.progress or {}),
        metadata=JobMetadata.model_validate(record.job_metadata or {}),
        error=JobError.model_validate(record.error) if record.error else None,
        run_at=_aware(record.run_at),
        cancel_requested=record.cancel_requested,
        pause_requested=record.pause_requested,
        version=record.version,
        timestamps=JobTimestamps(
            created=_aware(record.created_at),
            started=_aware(record.started_at),
            completed=_aware(record.completed_at),
            paused=_aware(record.paused_at),
            resumed=_aware(record.resumed_at),
            updated=_aware(record.updated_at),
        ),
    )


class SqlAlchemyJobRepository:
    """Job repository backed by the ``jobs`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def upsert(self, job: Job) -> None:
        values = job_to_values(job)

        async with self._session_factory() as session:
            record = await session.get(JobRecord, job.id)
            if record is None:
                session.add(JobRecord(**values))
            else:
                for key, value in values.items():
                    setattr(record, key, value)
            await session.commit()

    async def get(self, job_id: str) -> Job | None:
        async with self._session_factory() as session:
            record = await session.get(JobRecord, job_id)
            return record_to_job(record) if record else None

    async def query_by_status(self, status: JobStatus) -> list[Job]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(JobRecord)
                .where(JobRecord.status == status.value)
                .order_by(JobRecord.created_at)
            )
            return [record_to_job(record) for record in result.scalars().all()]


class InMemoryJobRepository:
    """
    Job repository keeping serialized copies in a dict.

    Used by the ``memory`` persistence backend; state does not outlive the
    process unless the same instance is handed to a new engine.
    """

    def __init__(self):
        self._rows: dict[str, dict[str, Any]] = {}

    async def upsert(self, job: Job) -> None:
        self._rows[job.id] = job.model_dump(mode="json")

    async def get(self, job_id: str) -> Job | None:
        row = self._rows.get(job_id)
        return Job.model_validate(row) if row is not None else None

    async def query_by_status(self, status: JobStatus) -> list[Job]:
        jobs = [
            Job.model_validate(row)
            for row in self._rows.values()
            if row["status"] == status.value
        ]
        return sorted(jobs, key=lambda job: job.timestamps.created)


def build_repository(
    settings: Settings, database: Database | None = None
) -> JobRepository:
    """Create the repository selected by ``job_persistence``."""
    if settings.job_persistence == PersistenceBackend.MEMORY:
        logger.warning(
            "Using in-memory job persistence; jobs will not survive a restart"
        )
        return InMemoryJobRepository()

    database = database or Database(settings)
    return SqlAlchemyJobRepository(database.SessionLocal)
