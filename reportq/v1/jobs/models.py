"""
Job record model and the job state machine.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from reportq.infra.database import Base


class JobStatus(str, Enum):
    """Job status enumeration."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})

# Allowed status moves. PROCESSING -> PROCESSING covers a redelivery after a
# worker died mid-attempt.
ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.PROCESSING}),
    JobStatus.PROCESSING: frozenset(
        {
            JobStatus.PROCESSING,
            JobStatus.COMPLETED,
            JobStatus.PENDING,
            JobStatus.FAILED,
        }
    ),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}


def can_transition(current: JobStatus | str, target: JobStatus | str) -> bool:
    """Check whether the state machine permits moving from current to target."""
    return JobStatus(target) in ALLOWED_TRANSITIONS[JobStatus(current)]


class Job(Base):
    """
    Durable job record.

    Created as pending at ingestion, mutated only by the job processor
    afterwards. artifact_reference is set only on completed jobs;
    failure_reason is set on failed jobs and while a retry is pending.
    """

    __tablename__ = "jobs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    job_type: Mapped[str] = mapped_column(
        String(100), nullable=False, comment="Job type identifier"
    )
    payload: Mapped[dict[str, Any]] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
        comment="Job-specific parameters, stored verbatim",
    )

    # Job state
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=JobStatus.PENDING.value,
        comment="Job status: pending|processing|completed|failed",
    )
    artifact_reference: Mapped[str | None] = mapped_column(
        String(255), nullable=True, comment="Reference to the produced artifact"
    )
    failure_reason: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Last failure message"
    )
    retry_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, comment="Retries consumed so far"
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="jobs_status_check",
        ),
        CheckConstraint("retry_count >= 0", name="jobs_retry_count_check"),
        Index("ix_jobs_status", "status"),
        Index("ix_jobs_created_at", "created_at"),
    )

    def is_terminal(self) -> bool:
        """Check if job is in a terminal state (completed, failed)."""
        return JobStatus(self.status) in TERMINAL_STATUSES

    def can_transition_to(self, target: JobStatus) -> bool:
        """Check if the job may move to the target status."""
        return can_transition(self.status, target)
