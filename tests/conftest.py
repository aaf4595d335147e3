import asyncio
from collections.abc import AsyncGenerator

import pytest

from dutyjobs.config.settings import Settings
from dutyjobs.v1.core.exceptions import JobHandlerError
from dutyjobs.v1.jobs.models import JobStatus
from dutyjobs.v1.jobs.payloads import BulkClassificationPayload
from dutyjobs.v1.jobs.persistence import InMemoryJobRepository
from dutyjobs.v1.jobs.service import JobEngine

WORKSPACE = "ws-test"
PRODUCT_METADATA = {"product_ids": ["p-1"]}


def make_settings(**overrides) -> Settings:
    """Settings tuned for fast, deterministic engine tests."""
    values = {
        "job_persistence": "memory",
        "job_concurrency": 1,
        "job_max_retries": 3,
        "job_backoff_base_ms": 0,
        "job_backoff_jitter": 0.0,
        "job_poll_interval_ms": 20,
        "persistence_retry_attempts": 3,
        "persistence_retry_base_ms": 0,
        "job_shutdown_timeout_s": 1.0,
    }
    values.update(overrides)
    return Settings(**values)


class ScriptedHandler:
    """
    Handler whose runs follow a script of outcomes.

    Each run pops the next outcome: "ok" returns a result, "fail" raises a
    JobHandlerError and "crash" raises an unexpected exception. Once the
    script is exhausted every run succeeds.
    """

    payload_schema = BulkClassificationPayload
    timeout_s: float | None = None
    supports_pause = False

    def __init__(self, outcomes: list[str] | None = None, delay: float = 0.0):
        self.outcomes = list(outcomes or [])
        self.delay = delay
        self.calls: list[str] = []

    async def handle(self, ctx, payload):
        self.calls.append(ctx.job_id)
        await ctx.report_progress(0, total=1)
        if self.delay:
            await asyncio.sleep(self.delay)

        outcome = self.outcomes.pop(0) if self.outcomes else "ok"
        if outcome == "fail":
            raise JobHandlerError("Classifier unavailable", code="CLASSIFIER_DOWN")
        if outcome == "crash":
            raise RuntimeError("unexpected handler bug")

        await ctx.report_progress(1, total=1)
        return {"classified": payload.product_ids}


class GatedHandler:
    """Pausable handler that blocks until released, checkpointing twice."""

    payload_schema = BulkClassificationPayload
    timeout_s: float | None = None
    supports_pause = True

    def __init__(self):
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def handle(self, ctx, payload):
        await ctx.report_progress(0, total=2)
        self.started.set()
        await self.release.wait()

        await ctx.checkpoint()
        await ctx.report_progress(1, total=2, current="first")
        await ctx.checkpoint()
        await ctx.report_progress(2, total=2)
        return {"done": True}


class FlakyRepository(InMemoryJobRepository):
    """In-memory repository whose next ``failures`` upserts raise."""

    def __init__(self, failures: int = 0):
        super().__init__()
        self.failures = failures
        self.upserts = 0

    async def upsert(self, job):
        self.upserts += 1
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionError("database unavailable")
        await super().upsert(job)


def make_engine(settings: Settings | None = None, repository=None, handler=None) -> JobEngine:
    engine = JobEngine(settings or make_settings(), repository or InMemoryJobRepository())
    if handler is not None:
        engine.register_handler("bulk_classification", handler)
    return engine


async def run_to_running(engine: JobEngine, job_id: str):
    """Move a pending job to running without the scheduler."""
    return await engine.store.apply_transition(
        job_id, JobStatus.RUNNING, expected_status=JobStatus.PENDING
    )


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def repository() -> InMemoryJobRepository:
    return InMemoryJobRepository()


@pytest.fixture
def handler() -> ScriptedHandler:
    return ScriptedHandler()


@pytest.fixture
def engine(settings, repository, handler) -> JobEngine:
    """Engine with a scripted bulk_classification handler, not started."""
    return make_engine(settings, repository, handler)


@pytest.fixture
async def running_engine(engine) -> AsyncGenerator[JobEngine, None]:
    """Started engine, stopped after the test."""
    await engine.start()
    yield engine
    await engine.stop()
