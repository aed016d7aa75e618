"""
Tests for job ingestion and status queries.
"""

from unittest.mock import AsyncMock, MagicMock
from uuid import UUID, uuid4

import pytest
from aio_pika.exceptions import ChannelInvalidStateError

from fakes import TOPOLOGY, FlakyStatusStore
from reportq.infra.broker import RabbitMQBroker
from reportq.v1.core.exceptions import (
    NotFoundError,
    QueueError,
    StorageError,
    ValidationError,
)
from reportq.v1.jobs.models import JobStatus
from reportq.v1.jobs.service import JobService


class TestSubmit:
    """Ingestion saga: record first, then publish."""

    async def test_submit_creates_pending_record_and_message(self, service, store, broker):
        result = await service.submit("x", {"region": "emea"})

        assert isinstance(result.job_id, UUID)
        assert result.status == "pending"

        job = await store.get(result.job_id)
        assert job.status == JobStatus.PENDING.value
        assert job.job_type == "x"
        assert job.payload == {"region": "emea"}
        assert job.retry_count == 0

        [published] = broker.published
        assert published["exchange"] == broker.topology.exchange
        assert published["routing_key"] == broker.topology.routing_key
        assert published["durable"] is True
        message = published["message"]
        assert message["job_id"] == str(result.job_id)
        assert message["job_type"] == "x"
        assert message["payload"] == {"region": "emea"}
        assert message["timestamp"]

    async def test_missing_payload_defaults_to_empty_object(self, service, store):
        result = await service.submit("x")

        assert (await store.get(result.job_id)).payload == {}

    async def test_job_ids_are_unique(self, service):
        first = await service.submit("x", {})
        second = await service.submit("x", {})

        assert first.job_id != second.job_id

    async def test_publish_failure_rolls_back_record(self, service, store, broker):
        broker.fail_publish = True

        with pytest.raises(QueueError):
            await service.submit("x", {})

        assert await store.count_by_status() == {}
        assert broker.depth(broker.topology.queue) == 0

    async def test_storage_failure_publishes_nothing(self, settings, store, broker):
        flaky = FlakyStatusStore(store)
        flaky.fail_next("create")
        service = JobService(settings, flaky, broker)

        with pytest.raises(StorageError):
            await service.submit("x", {})

        assert broker.published == []

    async def test_failed_rollback_still_raises_queue_error(self, settings, store, broker):
        flaky = FlakyStatusStore(store)
        flaky.fail_next("delete")
        service = JobService(settings, flaky, broker)
        broker.fail_publish = True

        with pytest.raises(QueueError):
            await service.submit("x", {})

        # The orphaned pending record stays behind
        assert await store.count_by_status() == {"pending": 1}

    async def test_closed_channel_rolls_back_record(self, settings, store):
        broker = RabbitMQBroker("amqp://localhost", TOPOLOGY)
        exchange = MagicMock(
            publish=AsyncMock(side_effect=ChannelInvalidStateError("channel closed"))
        )
        broker._exchanges = {TOPOLOGY.exchange: exchange}
        service = JobService(settings, store, broker)

        with pytest.raises(QueueError):
            await service.submit("x", {})

        exchange.publish.assert_awaited_once()
        assert await store.count_by_status() == {}


class TestValidation:
    """Rejected submissions and payload checks."""

    @pytest.mark.parametrize("job_type", [None, "", "   "])
    async def test_missing_job_type_is_rejected(self, service, store, broker, job_type):
        with pytest.raises(ValidationError, match="job_type") as exc_info:
            await service.submit(job_type, {})

        assert exc_info.value.status_code == 400
        assert await store.count_by_status() == {}
        assert broker.published == []

    async def test_non_string_job_type_is_rejected(self, service):
        with pytest.raises(ValidationError, match="job_type must be a string"):
            await service.submit(42, {})

    async def test_overlong_job_type_is_rejected(self, service):
        with pytest.raises(ValidationError, match="at most 100"):
            await service.submit("x" * 101, {})

    @pytest.mark.parametrize("payload", [[1, 2], "text", 3])
    async def test_non_object_payload_is_rejected(self, service, broker, payload):
        with pytest.raises(ValidationError, match="payload"):
            await service.submit("x", payload)

        assert broker.published == []

    async def test_sales_summary_requires_date_range(self, service, store):
        with pytest.raises(ValidationError, match="endDate"):
            await service.submit("sales_summary", {"startDate": "2024-01-01"})

        assert await store.count_by_status() == {}

    async def test_sales_summary_with_date_range_is_accepted(self, service):
        result = await service.submit(
            "sales_summary", {"startDate": "2024-01-01", "endDate": "2024-01-31"}
        )

        assert result.status == "pending"

    async def test_user_activity_requires_user_or_start_date(self, service):
        with pytest.raises(ValidationError, match="userId or startDate"):
            await service.submit("user_activity", {})

        result = await service.submit("user_activity", {"userId": "u-1"})
        assert result.status == "pending"


class TestStatusQueries:
    """Unknown job ids and the status projection."""

    async def test_unknown_job_is_not_found(self, service):
        with pytest.raises(NotFoundError):
            await service.get_status(str(uuid4()))

    async def test_malformed_job_id_is_a_validation_error(self, service):
        with pytest.raises(ValidationError, match="valid UUID"):
            await service.get_status("not-a-uuid")

    async def test_status_projection(self, service, store):
        submitted = await service.submit("x", {})
        await store.update(
            submitted.job_id,
            status=JobStatus.PENDING,
            retry_count=1,
            failure_reason="boom",
        )

        status = await service.get_status(str(submitted.job_id))

        assert status.model_dump() == {
            "job_id": submitted.job_id,
            "status": "pending",
            "artifact_reference": None,
            "failure_reason": "boom",
            "retry_count": 1,
        }

    async def test_stats_count_in_flight_jobs(self, service, store):
        first = await service.submit("x", {})
        second = await service.submit("x", {})
        await service.submit("x", {})
        await store.update(first.job_id, status=JobStatus.COMPLETED, artifact_reference="a")
        await store.update(second.job_id, status=JobStatus.PROCESSING)

        stats = await service.get_job_stats()

        assert stats.total_jobs == 3
        assert stats.in_flight == 2
        assert stats.by_status == {"completed": 1, "processing": 1, "pending": 1}
