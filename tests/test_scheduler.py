import asyncio
import random
import time

import pytest

from dutyjobs.v1.jobs.events import JobEvent
from dutyjobs.v1.jobs.models import JobPriority, JobStatus, JobType
from dutyjobs.v1.jobs.payloads import BulkClassificationPayload

from tests.conftest import (
    PRODUCT_METADATA,
    WORKSPACE,
    FlakyRepository,
    GatedHandler,
    ScriptedHandler,
    make_engine,
    make_settings,
)


class ConcurrencyRecorder:
    """Records the highest number of runs in flight at once, as seen by the store."""

    payload_schema = BulkClassificationPayload
    timeout_s = None
    supports_pause = False

    def __init__(self, seed: int):
        self.rng = random.Random(seed)
        self.store = None
        self.in_flight = 0
        self.max_in_flight = 0
        self.max_running = 0

    async def handle(self, ctx, payload):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        running = len(self.store.jobs_with_status(JobStatus.RUNNING))
        self.max_running = max(self.max_running, running)
        try:
            await asyncio.sleep(self.rng.uniform(0.001, 0.02))
        finally:
            self.in_flight -= 1
        return {}


async def add(engine, priority=JobPriority.MEDIUM):
    return await engine.add_job(
        JobType.BULK_CLASSIFICATION,
        PRODUCT_METADATA,
        priority,
        workspace_id=WORKSPACE,
    )


async def test_runs_in_priority_order():
    """With one slot, queued jobs run by priority, then in arrival order."""
    handler = ScriptedHandler()
    engine = make_engine(make_settings(job_concurrency=1), handler=handler)
    a = await add(engine, JobPriority.LOW)
    b = await add(engine, JobPriority.URGENT)
    c = await add(engine, JobPriority.URGENT)

    await engine.start()
    try:
        for job in (a, b, c):
            await engine.wait_for_job(job.id, timeout=5)
    finally:
        await engine.stop()

    assert handler.calls == [b.id, c.id, a.id]


@pytest.mark.parametrize("seed", [1, 7, 2024])
async def test_never_exceeds_concurrency(seed):
    """Random bursts of jobs never hold more slots than configured."""
    rng = random.Random(seed)
    recorder = ConcurrencyRecorder(seed)
    engine = make_engine(make_settings(job_concurrency=3), handler=recorder)
    recorder.store = engine.store
    await engine.start()

    jobs = []
    try:
        for _ in range(5):
            for _ in range(rng.randint(1, 8)):
                priority = rng.choice(list(JobPriority))
                jobs.append(await add(engine, priority))
                assert engine.scheduler.active_count <= 3
            await asyncio.sleep(rng.uniform(0, 0.01))

        for job in jobs:
            done = await engine.wait_for_job(job.id, timeout=10)
            assert done.status == JobStatus.COMPLETED
    finally:
        await engine.stop()

    assert 1 <= recorder.max_in_flight <= 3
    assert 1 <= recorder.max_running <= 3


async def test_retry_waits_for_backoff():
    """A failed run comes back only after its backoff delay."""
    handler = ScriptedHandler(["fail"])
    # first retry waits base * 2 = 0.1s
    settings = make_settings(job_backoff_base_ms=50, job_max_retries=3)
    engine = make_engine(settings, handler=handler)
    await engine.start()
    try:
        started = time.monotonic()
        job = await add(engine)
        done = await engine.wait_for_job(job.id, timeout=5)
        elapsed = time.monotonic() - started
    finally:
        await engine.stop()

    assert done.status == JobStatus.COMPLETED
    assert done.metadata.retry_count == 1
    assert len(handler.calls) == 2
    assert elapsed >= 0.09


async def test_stop_requeues_interrupted_job():
    """A run still going when the grace period ends goes back to pending."""
    handler = GatedHandler()
    engine = make_engine(make_settings(job_shutdown_timeout_s=0.05), handler=handler)
    await engine.start()

    job = await add(engine)
    await asyncio.wait_for(handler.started.wait(), timeout=5)
    await engine.stop()

    interrupted = engine.get_job(job.id)
    assert interrupted.status == JobStatus.PENDING
    assert interrupted.metadata.retry_count == 0
    assert interrupted.progress.total == 0
    assert interrupted.timestamps.started is None
    assert not engine.running


async def test_stop_waits_for_short_runs():
    handler = ScriptedHandler(delay=0.05)
    engine = make_engine(make_settings(job_shutdown_timeout_s=5), handler=handler)
    await engine.start()

    job = await add(engine)
    await engine.store.wait_for(job.id, {JobStatus.RUNNING}, timeout=5)
    await engine.stop()

    assert engine.get_job(job.id).status == JobStatus.COMPLETED


async def test_start_twice_fails():
    engine = make_engine(handler=ScriptedHandler())
    await engine.start()
    try:
        with pytest.raises(RuntimeError, match="already running"):
            await engine.start()
    finally:
        await engine.stop()


async def test_enqueue_rejects_non_pending():
    engine = make_engine(handler=ScriptedHandler())
    job = await add(engine)
    running = await engine.store.apply_transition(job.id, JobStatus.RUNNING)

    with pytest.raises(ValueError, match="Only pending jobs"):
        engine.scheduler.enqueue(running)


async def test_paused_time_does_not_count_toward_timeout():
    """A job parked longer than its timeout still finishes once resumed."""
    handler = GatedHandler()
    settings = make_settings(job_timeouts_s={"bulk_classification": 0.3})
    engine = make_engine(settings, handler=handler)
    await engine.start()
    try:
        job = await add(engine)
        await asyncio.wait_for(handler.started.wait(), timeout=5)
        await engine.pause_job(job.id)
        handler.release.set()
        await engine.store.wait_for(job.id, {JobStatus.PAUSED}, timeout=5)

        await asyncio.sleep(0.5)
        parked = engine.get_job(job.id)
        assert parked.status == JobStatus.PAUSED
        assert parked.error is None
        assert engine.scheduler.is_active(job.id)

        await engine.resume_job(job.id)
        done = await engine.wait_for_job(job.id, timeout=5)
    finally:
        await engine.stop()

    assert done.status == JobStatus.COMPLETED
    assert done.metadata.retry_count == 0
    assert done.metadata.result == {"done": True}


async def test_store_outage_during_failure_does_not_strand_job():
    """A failed run is still retried when the store is down as it fails."""
    repository = FlakyRepository()
    settings = make_settings(persistence_retry_attempts=2, persistence_retry_max_ms=10)
    engine = make_engine(settings, repository, ScriptedHandler(["fail"]))

    async def take_store_down(event, job):
        if event == JobEvent.PROGRESS_UPDATE and job.metadata.retry_count == 0:
            repository.failures = 5

    engine.subscribe(take_store_down)
    await engine.start()
    try:
        job = await add(engine)
        done = await engine.wait_for_job(job.id, timeout=5)
    finally:
        await engine.stop()

    assert done.status == JobStatus.COMPLETED
    assert done.metadata.retry_count == 1
    assert repository.failures == 0
    assert engine.scheduler.active_count == 0
