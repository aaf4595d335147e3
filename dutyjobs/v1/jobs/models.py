"""
Job engine models: status/priority/type enumerations and the durable job row.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from sqlalchemy import JSON, TIMESTAMP, Boolean, CheckConstraint, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from dutyjobs.infra.database import Base


class JobStatus(str, Enum):
    """Job status enumeration."""

    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    DEAD_LETTER = "dead_letter"


class JobPriority(str, Enum):
    """Queue ordering hint, lowest to highest."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    JobPriority.LOW: 0,
    JobPriority.MEDIUM: 1,
    JobPriority.HIGH: 2,
    JobPriority.URGENT: 3,
}


class JobType(str, Enum):
    """Supported kinds of background work."""

    BULK_CLASSIFICATION = "bulk_classification"
    BULK_FEE_CALCULATION = "bulk_fee_calculation"
    DATA_EXPORT = "data_export"
    DATA_IMPORT = "data_import"
    OPTIMIZATION = "optimization"
    SCENARIO_ANALYSIS = "scenario_analysis"


class JobRecord(Base):
    """
    Durable mirror of a job.

    The engine keeps the authoritative copy in memory; this row is written
    before every in-memory change is committed and read back on startup.
    """

    __tablename__ = "jobs"

    # Core fields
    id: Mapped[str] = mapped_column(Text, primary_key=True)
    type: Mapped[str] = mapped_column(
        Text, nullable=False, comment="Job type identifier"
    )
    workspace_id: Mapped[str] = mapped_column(
        Text, nullable=False, comment="Owning workspace"
    )
    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default=JobStatus.PENDING.value,
        comment="pending|running|paused|completed|failed|cancelled|dead_letter",
    )
    priority: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default=JobPriority.MEDIUM.value,
        comment="low|medium|high|urgent",
    )

    # Progress, payload and outcome
    progress: Mapped[dict[str, Any]] = mapped_column(
        JSON, nullable=False, default=dict, comment="{total, completed, failed, current}"
    )
    job_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        JSON,
        nullable=False,
        default=dict,
        comment="Handler payload, result and retry bookkeeping",
    )
    error: Mapped[dict[str, Any] | None] = mapped_column(
        JSON, nullable=True, comment="{message, code, details}"
    )

    # Scheduling and cooperative control
    run_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True, comment="Earliest time to run after backoff"
    )
    cancel_requested: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    pause_requested: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    version: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, comment="Mutation counter"
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )
    started_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    paused_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    resumed_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )

    # Constraints - only basic ones, indexes are created in migration
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'running', 'paused', 'completed', 'failed', "
            "'cancelled', 'dead_letter')",
            name="jobs_status_check",
        ),
        CheckConstraint(
            "priority IN ('low', 'medium', 'high', 'urgent')",
            name="jobs_priority_check",
        ),
    )
