"""create jobs table

Revision ID: 3b7c1d2e9a40
Revises:
Create Date: 2026-10-18 09:12:41.204118

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "3b7c1d2e9a40"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "jobs",
        sa.Column("id", sa.Text, primary_key=True),
        sa.Column("type", sa.Text, nullable=False, comment="Job type identifier"),
        sa.Column(
            "workspace_id", sa.Text, nullable=False, comment="Owning workspace"
        ),
        sa.Column(
            "status",
            sa.Text,
            nullable=False,
            default="pending",
            comment="pending|running|paused|completed|failed|cancelled|dead_letter",
        ),
        sa.Column(
            "priority",
            sa.Text,
            nullable=False,
            default="medium",
            comment="low|medium|high|urgent",
        ),
        # Progress, payload and outcome
        sa.Column(
            "progress",
            sa.JSON,
            nullable=False,
            comment="{total, completed, failed, current}",
        ),
        sa.Column(
            "metadata",
            sa.JSON,
            nullable=False,
            comment="Handler payload, result and retry bookkeeping",
        ),
        sa.Column("error", sa.JSON, nullable=True, comment="{message, code, details}"),
        # Scheduling and cooperative control
        sa.Column(
            "run_at",
            sa.TIMESTAMP(timezone=True),
            nullable=True,
            comment="Earliest time to run after backoff",
        ),
        sa.Column(
            "cancel_requested", sa.Boolean, nullable=False, server_default=sa.false()
        ),
        sa.Column(
            "pause_requested", sa.Boolean, nullable=False, server_default=sa.false()
        ),
        sa.Column(
            "version",
            sa.Integer,
            nullable=False,
            server_default="0",
            comment="Mutation counter",
        ),
        # Timestamps
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("started_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("completed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("paused_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("resumed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), nullable=False),
        # Constraints
        sa.CheckConstraint(
            "status IN ('pending', 'running', 'paused', 'completed', 'failed', "
            "'cancelled', 'dead_letter')",
            name="jobs_status_check",
        ),
        sa.CheckConstraint(
            "priority IN ('low', 'medium', 'high', 'urgent')",
            name="jobs_priority_check",
        ),
    )

    # Startup recovery reads by status; listings filter by workspace and type
    op.create_index("ix_jobs_status", "jobs", ["status"])
    op.create_index("ix_jobs_workspace_id_status", "jobs", ["workspace_id", "status"])
    op.create_index("ix_jobs_type_status", "jobs", ["type", "status"])
    op.create_index("ix_jobs_created_at", "jobs", ["created_at"])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index("ix_jobs_created_at", table_name="jobs")
    op.drop_index("ix_jobs_type_status", table_name="jobs")
    op.drop_index("ix_jobs_workspace_id_status", table_name="jobs")
    op.drop_index("ix_jobs_status", table_name="jobs")
    op.drop_table("jobs")
