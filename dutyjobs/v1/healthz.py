from datetime import UTC, datetime

from fastapi import APIRouter
from pydantic import BaseModel

from dutyjobs.config.settings import Settings, SettingsDep
from dutyjobs.v1.core.exceptions import create_success_response
from dutyjobs.v1.jobs.routes import JobEngineDep
from dutyjobs.v1.jobs.schemas import QueueStatusResponse
from dutyjobs.v1.jobs.service import JobEngine

router = APIRouter()


class EngineHealth(BaseModel):
    """Job engine health status."""

    running: bool
    registered_handlers: list[str]
    queue: QueueStatusResponse


class HealthResponse(BaseModel):
    """Health response with job engine status."""

    ok: bool
    version: str
    environment: str
    timestamp: str
    engine: EngineHealth


@router.get("/healthz", response_model=dict)
async def health_check(
    settings: Settings = SettingsDep, engine: JobEngine = JobEngineDep
):
    """Health check endpoint reporting scheduler state and queue depth."""

    engine_health = EngineHealth(
        running=engine.running,
        registered_handlers=engine.registry.list(),
        queue=engine.get_queue_status(),
    )

    health = HealthResponse(
        ok=engine.running,
        version=settings.version,
        environment=settings.environment,
        timestamp=datetime.now(UTC).isoformat(),
        engine=engine_health,
    )

    return create_success_response(data=health.model_dump(mode="json"))
