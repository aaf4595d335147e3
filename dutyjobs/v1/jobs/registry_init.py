"""
Job handler registration.

Registers a handler for every job type with the given engine.
"""

import logging

from dutyjobs.v1.jobs.collaborators import JobServices
from dutyjobs.v1.jobs.handlers import (
    BulkClassificationHandler,
    BulkFeeCalculationHandler,
    DataExportHandler,
    DataImportHandler,
    OptimizationHandler,
    ScenarioAnalysisHandler,
)
from dutyjobs.v1.jobs.models import JobType
from dutyjobs.v1.jobs.service import JobEngine

logger = logging.getLogger(__name__)


def register_job_handlers(engine: JobEngine, services: JobServices) -> None:
    """Register all job handlers with the engine's job registry."""

    logger.info("Registering job handlers")
    settings = engine.settings

    # Per-product handlers
    engine.register_handler(
        JobType.BULK_CLASSIFICATION, BulkClassificationHandler(settings, services)
    )
    engine.register_handler(
        JobType.BULK_FEE_CALCULATION, BulkFeeCalculationHandler(settings, services)
    )
    engine.register_handler(
        JobType.OPTIMIZATION, OptimizationHandler(settings, services)
    )

    # Data movement and analysis
    engine.register_handler(JobType.DATA_EXPORT, DataExportHandler(settings, services))
    engine.register_handler(JobType.DATA_IMPORT, DataImportHandler(settings, services))
    engine.register_handler(
        JobType.SCENARIO_ANALYSIS, ScenarioAnalysisHandler(settings, services)
    )

    logger.info(
        "Job handlers registered",
        extra={"registered_handlers": engine.registry.list()},
    )
