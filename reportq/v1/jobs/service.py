"""
Job service: request ingestion and status queries.

Ingestion is a two-step saga: write a pending record, then publish the work
message. When the publish fails the record is deleted again. A crash between
the two steps leaves a pending record without a message; that window is
accepted rather than covered by a distributed transaction.
"""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from reportq.config.logging import get_logger
from reportq.config.settings import Settings
from reportq.infra.broker import MessageBroker
from reportq.v1.core.exceptions import (
    QueueError,
    StorageError,
    ValidationError,
)
from reportq.v1.core.registries import PayloadValidatorRegistry, payload_validator_registry
from reportq.v1.jobs.models import JobStatus
from reportq.v1.jobs.schemas import (
    JobMessage,
    JobStatsResponse,
    JobStatusResponse,
    JobSubmitResponse,
)
from reportq.v1.jobs.store import StatusStore

logger = get_logger(__name__)

MAX_JOB_TYPE_LENGTH = 100


class JobService:
    """Service for submitting jobs and reading their status."""

    def __init__(
        self,
        settings: Settings,
        store: StatusStore,
        broker: MessageBroker,
        validators: PayloadValidatorRegistry = payload_validator_registry,
    ):
        self.settings = settings
        self.store = store
        self.broker = broker
        self.validators = validators

    def validate_submission(
        self, job_type: Any, payload: Any
    ) -> tuple[str, dict[str, Any]]:
        """Check the submission shape and return the normalized (job_type, payload)."""
        if job_type is None or (isinstance(job_type, str) and not job_type.strip()):
            raise ValidationError("job_type is required", details={"field": "job_type"})
        if not isinstance(job_type, str):
            raise ValidationError(
                "job_type must be a string", details={"field": "job_type"}
            )
        if len(job_type) > MAX_JOB_TYPE_LENGTH:
            raise ValidationError(
                f"job_type must be at most {MAX_JOB_TYPE_LENGTH} characters",
                details={"field": "job_type"},
            )

        if payload is None:
            payload = {}
        if not isinstance(payload, dict):
            raise ValidationError(
                "payload must be an object", details={"field": "payload"}
            )

        if job_type in self.validators:
            self.validators.get(job_type).validate(payload)

        return job_type, payload

    async def submit(self, job_type: Any, payload: Any = None) -> JobSubmitResponse:
        """
        Accept a job for asynchronous processing.

        Raises:
            ValidationError: bad job_type or payload; nothing is written
            StorageError: the pending record could not be written; nothing is published
            QueueError: the publish failed; the pending record has been removed
        """
        job_type, payload = self.validate_submission(job_type, payload)

        job_id = await self.store.create(job_type, payload)

        message = JobMessage(
            job_id=job_id,
            job_type=job_type,
            payload=payload,
            timestamp=datetime.now(UTC),
        )
        topology = self.broker.topology
        try:
            await self.broker.publish(
                topology.exchange, topology.routing_key, message.to_wire(), durable=True
            )
        except QueueError:
            await self._compensate(job_id)
            raise

        logger.info("Job enqueued", job_id=str(job_id), job_type=job_type)

        return JobSubmitResponse(job_id=job_id, status=JobStatus.PENDING.value)

    async def _compensate(self, job_id: UUID) -> None:
        """Best-effort removal of a record whose message never reached the broker."""
        try:
            await self.store.delete(job_id)
            logger.warning("Publish failed, pending record rolled back", job_id=str(job_id))
        except StorageError:
            logger.exception(
                "Publish failed and rollback failed, pending record orphaned",
                job_id=str(job_id),
            )

    @staticmethod
    def parse_job_id(job_id: str | UUID) -> UUID:
        if isinstance(job_id, UUID):
            return job_id
        try:
            return UUID(str(job_id))
        except ValueError:
            raise ValidationError(
                "job_id must be a valid UUID", details={"field": "job_id"}
            ) from None

    async def get_status(self, job_id: str | UUID) -> JobStatusResponse:
        """Project the last durably recorded state of a job."""
        job = await self.store.get(self.parse_job_id(job_id))
        return JobStatusResponse.from_job(job)

    async def get_job_stats(self) -> JobStatsResponse:
        """Get job counts per status."""
        by_status = await self.store.count_by_status()
        in_flight = by_status.get(JobStatus.PENDING.value, 0) + by_status.get(
            JobStatus.PROCESSING.value, 0
        )
        return JobStatsResponse(
            total_jobs=sum(by_status.values()),
            by_status=by_status,
            in_flight=in_flight,
        )
