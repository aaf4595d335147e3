from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from dutyjobs.config.logging import setup_logging
from dutyjobs.config.settings import settings
from dutyjobs.v1.core.exceptions import (
    DutyJobsException,
    RequestContextMiddleware,
    dutyjobs_exception_handler,
    general_exception_handler,
    http_exception_handler,
)
from dutyjobs.v1.healthz import router as health_router
from dutyjobs.v1.jobs.collaborators import JobServices
from dutyjobs.v1.jobs.registry_init import register_job_handlers
from dutyjobs.v1.jobs.routes import router as jobs_router
from dutyjobs.v1.jobs.service import JobEngine, create_job_engine


def create_app(
    engine: JobEngine | None = None, services: JobServices | None = None
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Without an explicit engine one is built from settings and every job
    handler is registered against ``services``. The engine starts and stops
    with the application.
    """

    # Initialize structured logging
    setup_logging()

    if engine is None:
        engine = create_job_engine(settings)
        register_job_handlers(engine, services or JobServices())

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await engine.start()
        try:
            yield
        finally:
            await engine.stop()

    # Create FastAPI app with API versioning from day 1
    app = FastAPI(
        title=settings.app_name,
        description="In-process background job engine for duty and catalog work",
        version=settings.version,
        debug=settings.debug,
        lifespan=lifespan,
        # All endpoints will be under /v1/ prefix
        openapi_url="/v1/openapi.json" if settings.debug else None,
        docs_url="/v1/docs" if settings.debug else None,
        redoc_url="/v1/redoc" if settings.debug else None,
    )
    app.state.job_engine = engine

    # Add middleware
    app.add_middleware(RequestContextMiddleware)

    # Add CORS middleware for development
    if settings.debug:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    # Add exception handlers
    app.add_exception_handler(DutyJobsException, dutyjobs_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    # Include routers with /v1 prefix
    app.include_router(health_router, prefix="/v1", tags=["health"])
    app.include_router(jobs_router, prefix="/v1")

    return app


# Create the app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    # A single process owns the in-memory job state
    uvicorn.run(
        "dutyjobs.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        workers=1,
    )
