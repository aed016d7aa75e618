"""
Job system Pydantic schemas: broker wire format and API projections.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from reportq.v1.jobs.models import Job, JobStatus


class JobMessage(BaseModel):
    """Broker payload handed from the ingestor to the job processor."""

    job_id: UUID
    job_type: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime | None = None

    model_config = ConfigDict(frozen=True)

    def to_wire(self) -> dict[str, Any]:
        """JSON-compatible dict for publishing."""
        return self.model_dump(mode="json")


class JobSubmitResponse(BaseModel):
    """Schema for the ingestion acknowledgement."""

    job_id: UUID
    status: str = JobStatus.PENDING.value


class JobStatusResponse(BaseModel):
    """Schema for the status query projection."""

    job_id: UUID
    status: str
    artifact_reference: str | None = None
    failure_reason: str | None = None
    retry_count: int

    @classmethod
    def from_job(cls, job: Job) -> "JobStatusResponse":
        return cls(
            job_id=job.id,
            status=job.status,
            artifact_reference=job.artifact_reference,
            failure_reason=job.failure_reason,
            retry_count=job.retry_count,
        )


class JobStatsResponse(BaseModel):
    """Schema for job statistics."""

    total_jobs: int
    by_status: dict[str, int]
    in_flight: int  # pending + processing
