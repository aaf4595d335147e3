import pytest

from dutyjobs.v1.jobs.events import JobEvent, JobEventBus, event_for_transition
from dutyjobs.v1.jobs.models import JobStatus, JobType

from tests.conftest import (
    PRODUCT_METADATA,
    WORKSPACE,
    GatedHandler,
    ScriptedHandler,
    make_engine,
    make_settings,
)


class EventRecorder:
    def __init__(self):
        self.seen = []

    async def __call__(self, event, job):
        self.seen.append((event, job.status))

    @property
    def events(self):
        return [event for event, _ in self.seen]


async def add(engine):
    return await engine.add_job(
        JobType.BULK_CLASSIFICATION, PRODUCT_METADATA, workspace_id=WORKSPACE
    )


@pytest.mark.parametrize(
    "previous,new,expected",
    [
        (JobStatus.PENDING, JobStatus.RUNNING, JobEvent.JOB_STARTED),
        (JobStatus.PAUSED, JobStatus.RUNNING, JobEvent.JOB_RESUMED),
        (JobStatus.RUNNING, JobStatus.PAUSED, JobEvent.JOB_PAUSED),
        (JobStatus.PAUSED, JobStatus.PENDING, JobEvent.JOB_RESUMED),
        (JobStatus.RUNNING, JobStatus.PENDING, JobEvent.JOB_REQUEUED),
        (JobStatus.FAILED, JobStatus.PENDING, JobEvent.JOB_RETRY),
        (JobStatus.DEAD_LETTER, JobStatus.PENDING, JobEvent.JOB_RETRY),
        (JobStatus.RUNNING, JobStatus.COMPLETED, JobEvent.JOB_COMPLETED),
        (JobStatus.FAILED, JobStatus.DEAD_LETTER, JobEvent.JOB_FAILED),
        (JobStatus.PENDING, JobStatus.CANCELLED, JobEvent.JOB_CANCELLED),
        (JobStatus.RUNNING, JobStatus.FAILED, None),
    ],
)
def test_event_for_transition(previous, new, expected):
    assert event_for_transition(previous, new) == expected


async def test_retried_job_lifecycle_is_published_in_order():
    handler = ScriptedHandler(["fail"])
    engine = make_engine(handler=handler)
    recorder = EventRecorder()
    engine.subscribe(recorder)

    await engine.start()
    try:
        job = await add(engine)
        await engine.wait_for_job(job.id, timeout=5)
    finally:
        await engine.stop()

    assert recorder.events == [
        JobEvent.JOB_ADDED,
        JobEvent.JOB_STARTED,
        JobEvent.PROGRESS_UPDATE,
        JobEvent.JOB_RETRY,
        JobEvent.JOB_STARTED,
        JobEvent.PROGRESS_UPDATE,
        JobEvent.PROGRESS_UPDATE,
        JobEvent.JOB_COMPLETED,
    ]
    assert recorder.seen[3] == (JobEvent.JOB_RETRY, JobStatus.PENDING)
    assert recorder.seen[-1] == (JobEvent.JOB_COMPLETED, JobStatus.COMPLETED)


async def test_dead_letter_publishes_job_failed():
    engine = make_engine(make_settings(job_max_retries=1), handler=ScriptedHandler(["fail"]))
    recorder = EventRecorder()
    engine.subscribe(recorder)

    await engine.start()
    try:
        job = await add(engine)
        done = await engine.wait_for_job(job.id, timeout=5)
    finally:
        await engine.stop()

    assert done.status == JobStatus.DEAD_LETTER
    assert recorder.events[-1] == JobEvent.JOB_FAILED
    assert JobEvent.JOB_RETRY not in recorder.events


async def test_pause_and_resume_are_published():
    handler = GatedHandler()
    engine = make_engine(handler=handler)
    recorder = EventRecorder()
    engine.subscribe(recorder)

    await engine.start()
    try:
        job = await add(engine)
        await handler.started.wait()
        await engine.pause_job(job.id)
        handler.release.set()
        await engine.store.wait_for(job.id, {JobStatus.PAUSED}, timeout=5)
        await engine.resume_job(job.id)
        await engine.wait_for_job(job.id, timeout=5)
    finally:
        await engine.stop()

    lifecycle = [event for event in recorder.events if event != JobEvent.PROGRESS_UPDATE]
    assert lifecycle == [
        JobEvent.JOB_ADDED,
        JobEvent.JOB_STARTED,
        JobEvent.JOB_PAUSED,
        JobEvent.JOB_RESUMED,
        JobEvent.JOB_COMPLETED,
    ]


async def test_failing_listener_does_not_affect_job():
    engine = make_engine(handler=ScriptedHandler())
    recorder = EventRecorder()

    async def broken(event, job):
        raise RuntimeError("notification service down")

    engine.subscribe(broken)
    engine.subscribe(recorder)

    await engine.start()
    try:
        job = await add(engine)
        done = await engine.wait_for_job(job.id, timeout=5)
    finally:
        await engine.stop()

    assert done.status == JobStatus.COMPLETED
    assert recorder.events[0] == JobEvent.JOB_ADDED
    assert recorder.events[-1] == JobEvent.JOB_COMPLETED


async def test_listener_gets_a_snapshot():
    engine = make_engine(handler=ScriptedHandler())

    async def meddle(event, job):
        job.metadata.payload["product_ids"] = []

    engine.subscribe(meddle)
    job = await add(engine)

    assert engine.get_job(job.id).metadata.payload["product_ids"] == ["p-1"]


async def test_unsubscribe_stops_delivery():
    bus = JobEventBus()
    recorder = EventRecorder()
    unsubscribe = bus.subscribe(recorder)
    engine = make_engine(handler=ScriptedHandler())
    job = await add(engine)

    await bus.publish(JobEvent.JOB_ADDED, job)
    unsubscribe()
    await bus.publish(JobEvent.JOB_STARTED, job)
    unsubscribe()

    assert recorder.events == [JobEvent.JOB_ADDED]
