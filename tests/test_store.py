import asyncio
import gc

import pytest

from dutyjobs.v1.core.exceptions import (
    InvalidTransitionError,
    NotFoundError,
    PersistenceError,
    StaleTransitionError,
)
from dutyjobs.v1.jobs.models import JobPriority, JobStatus, JobType
from dutyjobs.v1.jobs.persistence import InMemoryJobRepository
from dutyjobs.v1.jobs.schemas import JobListFilters
from dutyjobs.v1.jobs.store import JobStore

from tests.conftest import WORKSPACE, FlakyRepository, make_settings


def make_store(repository=None):
    return JobStore(repository or InMemoryJobRepository(), make_settings())


async def create_job(store, priority=JobPriority.MEDIUM, workspace_id=WORKSPACE):
    return await store.create(
        job_type=JobType.BULK_CLASSIFICATION,
        workspace_id=workspace_id,
        payload={"product_ids": ["p-1"], "parameters": {}},
        priority=priority,
        max_retries=3,
    )


class TestCreateAndRead:
    """Job creation and snapshot reads"""

    async def test_create_persists_pending_job(self):
        repository = InMemoryJobRepository()
        store = make_store(repository)

        job = await create_job(store)

        assert job.status == JobStatus.PENDING
        assert job.version == 1
        assert job.timestamps.created.tzinfo is not None
        stored = await repository.get(job.id)
        assert stored is not None
        assert stored.status == JobStatus.PENDING

    async def test_reads_are_snapshots(self):
        store = make_store()
        job = await create_job(store)

        snapshot = store.get(job.id)
        snapshot.status = JobStatus.COMPLETED
        snapshot.metadata.retry_count = 9

        fresh = store.get(job.id)
        assert fresh.status == JobStatus.PENDING
        assert fresh.metadata.retry_count == 0

    async def test_get_scoped_to_workspace(self):
        store = make_store()
        job = await create_job(store)

        assert store.get(job.id, WORKSPACE).id == job.id
        with pytest.raises(NotFoundError):
            store.get(job.id, "another-workspace")
        with pytest.raises(NotFoundError):
            store.get("missing")

    async def test_load_restores_from_repository(self):
        repository = InMemoryJobRepository()
        first = make_store(repository)
        job = await create_job(first)

        second = make_store(repository)
        assert await second.load() == 1
        assert second.get(job.id).model_dump() == first.get(job.id).model_dump()


class TestListJobs:
    """Filtering and pagination"""

    async def test_filters_and_pagination(self):
        store = make_store()
        jobs = [await create_job(store) for _ in range(5)]
        urgent = await create_job(store, priority=JobPriority.URGENT)
        await create_job(store, workspace_id="elsewhere")
        await store.apply_transition(jobs[0].id, JobStatus.RUNNING)

        page, total = store.list_jobs(JobListFilters(workspace_id=WORKSPACE), limit=4)
        assert total == 6
        assert len(page) == 4
        rest, _ = store.list_jobs(
            JobListFilters(workspace_id=WORKSPACE), limit=4, offset=4
        )
        assert len(rest) == 2
        assert len({job.id for job in page + rest}) == 6

        running, total = store.list_jobs(JobListFilters(status=[JobStatus.RUNNING]))
        assert total == 1
        assert running[0].id == jobs[0].id

        by_priority, _ = store.list_jobs(JobListFilters(priority=JobPriority.URGENT))
        assert [job.id for job in by_priority] == [urgent.id]

    async def test_newest_first(self):
        store = make_store()
        older = await create_job(store)
        await asyncio.sleep(0.001)
        newer = await create_job(store)

        page, _ = store.list_jobs()

        assert [job.id for job in page] == [newer.id, older.id]


class TestTransitions:
    """Status changes"""

    async def test_transition_bumps_version(self):
        store = make_store()
        job = await create_job(store)

        running = await store.apply_transition(job.id, JobStatus.RUNNING)

        assert running.status == JobStatus.RUNNING
        assert running.version == job.version + 1
        assert running.timestamps.updated >= job.timestamps.updated

    async def test_invalid_transition_changes_nothing(self):
        store = make_store()
        job = await create_job(store)

        with pytest.raises(InvalidTransitionError):
            await store.apply_transition(job.id, JobStatus.COMPLETED)

        assert store.get(job.id).model_dump() == job.model_dump()

    async def test_stale_expected_status(self):
        store = make_store()
        job = await create_job(store)

        with pytest.raises(StaleTransitionError, match="expected running"):
            await store.apply_transition(
                job.id, JobStatus.COMPLETED, expected_status=JobStatus.RUNNING
            )

    async def test_update_cannot_change_status(self):
        store = make_store()
        job = await create_job(store)

        def sneak(candidate):
            candidate.status = JobStatus.RUNNING

        with pytest.raises(ValueError, match="apply_transition"):
            await store.update(job.id, sneak)
        assert store.get(job.id).status == JobStatus.PENDING

    async def test_locks_released_after_use(self):
        store = make_store()
        jobs = [await create_job(store) for _ in range(20)]

        await asyncio.gather(
            *(store.apply_transition(job.id, JobStatus.RUNNING) for job in jobs)
        )
        for job in jobs:
            await store.apply_transition(job.id, JobStatus.COMPLETED)
        gc.collect()

        assert len(store._locks) == 0

    async def test_concurrent_writers_still_serialized(self):
        store = make_store()
        job = await create_job(store)

        results = await asyncio.gather(
            *(
                store.apply_transition(
                    job.id, JobStatus.RUNNING, expected_status=JobStatus.PENDING
                )
                for _ in range(5)
            ),
            return_exceptions=True,
        )

        assert sum(not isinstance(result, Exception) for result in results) == 1
        assert all(
            isinstance(result, StaleTransitionError)
            for result in results
            if isinstance(result, Exception)
        )
        assert store.get(job.id).version == job.version + 1


class TestPersistence:
    """Write-through behaviour when the durable store misbehaves"""

    async def test_failed_write_leaves_state_unchanged(self):
        repository = FlakyRepository()
        store = make_store(repository)
        job = await create_job(store)

        repository.failures = 3
        with pytest.raises(PersistenceError):
            await store.apply_transition(job.id, JobStatus.RUNNING)

        assert store.get(job.id).status == JobStatus.PENDING
        assert (await repository.get(job.id)).status == JobStatus.PENDING

    async def test_transient_failures_are_retried(self):
        repository = FlakyRepository()
        store = make_store(repository)
        job = await create_job(store)

        repository.failures = 2
        repository.upserts = 0
        running = await store.apply_transition(job.id, JobStatus.RUNNING)

        assert running.status == JobStatus.RUNNING
        assert repository.upserts == 3
        assert (await repository.get(job.id)).status == JobStatus.RUNNING


class TestProgress:
    """Progress reporting invariants"""

    async def test_progress_recorded(self):
        store = make_store()
        job = await create_job(store)
        await store.apply_transition(job.id, JobStatus.RUNNING)

        updated = await store.update_progress(
            job.id, completed=2, failed=1, total=4, current="p-3"
        )

        assert updated.progress.completed == 2
        assert updated.progress.failed == 1
        assert updated.progress.current == "p-3"
        assert updated.progress.percentage == 75.0

    async def test_progress_cannot_exceed_total(self):
        store = make_store()
        job = await create_job(store)
        await store.apply_transition(job.id, JobStatus.RUNNING)

        with pytest.raises(ValueError, match="exceeds total"):
            await store.update_progress(job.id, completed=3, failed=0, total=2)

    async def test_progress_cannot_go_backwards(self):
        store = make_store()
        job = await create_job(store)
        await store.apply_transition(job.id, JobStatus.RUNNING)
        await store.update_progress(job.id, completed=2, total=4)

        with pytest.raises(ValueError, match="cannot decrease"):
            await store.update_progress(job.id, completed=1)

        assert store.get(job.id).progress.completed == 2

    async def test_progress_only_while_running(self):
        store = make_store()
        job = await create_job(store)

        with pytest.raises(StaleTransitionError):
            await store.update_progress(job.id, completed=0, total=1)


class TestWaitFor:
    """Waiting on status changes"""

    async def test_wakes_on_transition(self):
        store = make_store()
        job = await create_job(store)

        async def later():
            await asyncio.sleep(0.01)
            await store.apply_transition(job.id, JobStatus.RUNNING)

        task = asyncio.create_task(later())
        running = await store.wait_for(job.id, {JobStatus.RUNNING}, timeout=1)
        await task

        assert running.status == JobStatus.RUNNING

    async def test_returns_immediately_when_already_there(self):
        store = make_store()
        job = await create_job(store)

        pending = await store.wait_for(job.id, {JobStatus.PENDING}, timeout=1)

        assert pending.id == job.id

    async def test_times_out(self):
        store = make_store()
        job = await create_job(store)

        with pytest.raises(asyncio.TimeoutError):
            await store.wait_for(job.id, {JobStatus.COMPLETED}, timeout=0.05)
