"""
Status store: durable keyed job records.

Database failures, including driver connection errors, surface as
StorageError; a missing record surfaces as NotFoundError. Updates are
single-statement and therefore atomic per record.
"""

from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any, Protocol
from uuid import UUID, uuid4

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError

from reportq.config.logging import get_logger
from reportq.infra.database import Database
from reportq.v1.core.exceptions import NotFoundError, StorageError
from reportq.v1.jobs.models import Job, JobStatus

logger = get_logger(__name__)

# asyncpg raises OSError subclasses such as ConnectionRefusedError for an
# unreachable server, and SQLAlchemy passes them through unwrapped
STORAGE_ERRORS = (SQLAlchemyError, OSError)

UPDATABLE_FIELDS = frozenset(
    {"status", "artifact_reference", "failure_reason", "retry_count"}
)


class StatusStore(Protocol):
    """Contract consumed by the ingestor, the processor and status queries."""

    async def create(self, job_type: str, payload: dict[str, Any]) -> UUID: ...

    async def get(self, job_id: UUID) -> Job: ...

    async def update(
        self,
        job_id: UUID,
        *,
        expected_status: Iterable[JobStatus] | None = None,
        **fields: Any,
    ) -> bool: ...

    async def delete(self, job_id: UUID) -> bool: ...

    async def count_by_status(self) -> dict[str, int]: ...


class SqlStatusStore:
    """StatusStore backed by the jobs table."""

    def __init__(self, database: Database):
        self.database = database

    async def create(self, job_type: str, payload: dict[str, Any]) -> UUID:
        """Insert a pending record and return its freshly generated id."""
        job = Job(
            id=uuid4(),
            job_type=job_type,
            payload=payload,
            status=JobStatus.PENDING.value,
            retry_count=0,
        )
        try:
            async with self.database.SessionLocal() as session:
                session.add(job)
                await session.commit()
        except STORAGE_ERRORS as e:
            logger.error("Failed to create job record", job_type=job_type, error=str(e))
            raise StorageError(
                "Failed to create job record", details={"error": str(e)}
            ) from e

        return job.id

    async def get(self, job_id: UUID) -> Job:
        """Fetch a record by id."""
        try:
            async with self.database.SessionLocal() as session:
                job = await session.get(Job, job_id)
        except STORAGE_ERRORS as e:
            raise StorageError(
                "Failed to read job record",
                details={"job_id": str(job_id), "error": str(e)},
            ) from e

        if job is None:
            raise NotFoundError("Job not found", details={"job_id": str(job_id)})
        return job

    async def update(
        self,
        job_id: UUID,
        *,
        expected_status: Iterable[JobStatus] | None = None,
        **fields: Any,
    ) -> bool:
        """
        Update fields of a record.

        Without expected_status a missing record raises NotFoundError. With
        expected_status the update applies only while the record is in one of
        those states, and False is returned when it did not apply.
        """
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update job fields: {sorted(unknown)}")

        values = dict(fields)
        if isinstance(values.get("status"), JobStatus):
            values["status"] = values["status"].value
        values["updated_at"] = datetime.now(UTC)

        query = update(Job).where(Job.id == job_id)
        if expected_status is not None:
            query = query.where(
                Job.status.in_([JobStatus(s).value for s in expected_status])
            )

        try:
            async with self.database.SessionLocal() as session:
                result = await session.execute(query.values(**values))
                await session.commit()
        except STORAGE_ERRORS as e:
            raise StorageError(
                "Failed to update job record",
                details={"job_id": str(job_id), "error": str(e)},
            ) from e

        applied = result.rowcount > 0
        if not applied and expected_status is None:
            raise NotFoundError("Job not found", details={"job_id": str(job_id)})
        return applied

    async def delete(self, job_id: UUID) -> bool:
        """Remove a record. Only used to compensate a failed publish."""
        try:
            async with self.database.SessionLocal() as session:
                result = await session.execute(delete(Job).where(Job.id == job_id))
                await session.commit()
        except STORAGE_ERRORS as e:
            raise StorageError(
                "Failed to delete job record",
                details={"job_id": str(job_id), "error": str(e)},
            ) from e

        return result.rowcount > 0

    async def count_by_status(self) -> dict[str, int]:
        """Count records per status."""
        try:
            async with self.database.SessionLocal() as session:
                result = await session.execute(
                    select(Job.status, func.count(Job.id)).group_by(Job.status)
                )
                return dict(result.all())
        except STORAGE_ERRORS as e:
            raise StorageError(
                "Failed to count job records", details={"error": str(e)}
            ) from e
