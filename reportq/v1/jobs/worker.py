"""
Broker-driven job processor.

Each instance consumes one message at a time (prefetch 1) and drives the job
state machine:

    pending -> processing -> completed            (ack)
                          -> pending, retry+1     (nack, requeue)
                          -> failed               (nack, no requeue -> DLQ)

The retry counter is read from the status store, never from broker
redelivery metadata, since several instances share one queue.
"""

import asyncio
import os
import socket
from collections.abc import Awaitable, Callable
from contextlib import aclosing
from enum import Enum
from uuid import UUID

from pydantic import ValidationError as MessageFormatError

from reportq.config.logging import get_logger
from reportq.config.settings import Settings
from reportq.infra.broker import Delivery, MessageBroker
from reportq.v1.core.exceptions import (
    NotFoundError,
    QueueError,
    StorageError,
    TransientError,
)
from reportq.v1.core.registries import WorkHandlerRegistry, work_handler_registry
from reportq.v1.jobs.models import Job, JobStatus
from reportq.v1.jobs.retry import (
    RetryDecision,
    RetryPolicy,
    backoff_delay,
    describe_error,
)
from reportq.v1.jobs.schemas import JobMessage
from reportq.v1.jobs.store import StatusStore

logger = get_logger(__name__)

# One unacknowledged delivery per instance; scale out with more instances.
JOB_PREFETCH_COUNT = 1

WorkFunction = Callable[[Job], Awaitable[str]]


class ProcessingOutcome(str, Enum):
    """What a single delivery ended up doing."""

    COMPLETED = "completed"
    RETRY_SCHEDULED = "retry_scheduled"
    DEAD_LETTERED = "dead_lettered"
    DISCARDED = "discarded"
    SKIPPED_TERMINAL = "skipped_terminal"
    REQUEUED = "requeued"


class JobProcessor:
    """
    Single-concurrency consumer of the work queue.

    Features:
    - Idempotent handling of redelivered messages for terminal jobs
    - Poison message protection (malformed messages are acked and dropped)
    - Bounded retries with the counter persisted in the status store
    - Dead-lettering through the broker's own dead-letter exchange
    - Consumer reconnect with exponential backoff
    """

    def __init__(
        self,
        settings: Settings,
        store: StatusStore,
        broker: MessageBroker,
        work: WorkFunction | None = None,
        retry_policy: RetryPolicy | None = None,
        handlers: WorkHandlerRegistry = work_handler_registry,
    ):
        self.settings = settings
        self.store = store
        self.broker = broker
        self.work = work
        self.handlers = handlers
        self.retry_policy = retry_policy or RetryPolicy(max_retries=settings.max_retries)
        self.worker_id = f"{socket.gethostname()}-{os.getpid()}-{id(self)}"
        self.running = False
        self.current_job: UUID | None = None
        self._loop_task: asyncio.Task | None = None

    async def start(self) -> None:
        """Consume the work queue until stop() is called."""
        if self.running:
            raise RuntimeError("Processor is already running")

        self.running = True
        logger.info(
            "Starting job processor",
            worker_id=self.worker_id,
            queue=self.broker.topology.queue,
            max_retries=self.retry_policy.max_retries,
            prefetch=JOB_PREFETCH_COUNT,
        )

        self._loop_task = asyncio.create_task(self._consume_loop())
        try:
            await self._loop_task
        except asyncio.CancelledError:
            if self.running:
                raise
            logger.info("Job processor stopped", worker_id=self.worker_id)
        finally:
            self.running = False
            self._loop_task = None

    async def stop(self, timeout_s: float = 30.0) -> None:
        """Stop taking messages, wait for the in-flight job, then end the loop."""
        logger.info("Stopping job processor", worker_id=self.worker_id)
        self.running = False

        waited = 0.0
        while self.current_job is not None and waited < timeout_s:
            await asyncio.sleep(0.1)
            waited += 0.1

        if self.current_job is not None:
            # The unsettled delivery goes back to the queue when the channel closes
            logger.warning(
                "Processor stopped with a job in flight",
                worker_id=self.worker_id,
                job_id=str(self.current_job),
            )

        if self._loop_task is not None and not self._loop_task.done():
            self._loop_task.cancel()

    async def _consume_loop(self) -> None:
        """Main loop: one delivery at a time, resubscribing after broker failures."""
        failures = 0
        while self.running:
            try:
                deliveries = self.broker.consume(
                    self.broker.topology.queue, prefetch=JOB_PREFETCH_COUNT
                )
                async with aclosing(deliveries) as stream:
                    async for delivery in stream:
                        failures = 0
                        await self.process_delivery(delivery)
                        if not self.running:
                            return
            except QueueError as e:
                failures += 1
                delay = backoff_delay(
                    failures,
                    self.settings.rabbitmq_connect_delay_s,
                    self.settings.rabbitmq_max_connect_delay_s,
                )
                logger.warning(
                    "Consumer interrupted, resubscribing",
                    worker_id=self.worker_id,
                    error=e.message,
                    retry_in_s=round(delay, 2),
                )
                await asyncio.sleep(delay)
            else:
                # The stream ended without an error (consumer cancelled by the broker)
                await asyncio.sleep(self.settings.rabbitmq_connect_delay_s)

    async def process_delivery(self, delivery: Delivery) -> ProcessingOutcome:
        """Handle one delivery and settle it exactly once."""
        message = self._parse(delivery)
        if message is None:
            await self._ack(delivery)
            return ProcessingOutcome.DISCARDED

        job_logger = logger.bind(
            job_id=str(message.job_id),
            job_type=message.job_type,
            worker_id=self.worker_id,
        )
        self.current_job = message.job_id
        try:
            return await self._process_message(delivery, message, job_logger)
        finally:
            self.current_job = None

    def _parse(self, delivery: Delivery) -> JobMessage | None:
        try:
            return JobMessage.model_validate_json(delivery.body)
        except MessageFormatError as e:
            logger.error(
                "Discarding malformed message",
                worker_id=self.worker_id,
                body=delivery.body[:200].decode("utf-8", errors="replace"),
                errors=e.error_count(),
            )
            return None

    async def _process_message(
        self, delivery: Delivery, message: JobMessage, job_logger
    ) -> ProcessingOutcome:
        try:
            job = await self.store.get(message.job_id)
        except NotFoundError:
            job_logger.warning("Job record not found, discarding message")
            await self._ack(delivery)
            return ProcessingOutcome.DISCARDED
        except StorageError:
            job_logger.exception("Status store unavailable, requeueing message")
            await self._nack(delivery, requeue=True)
            return ProcessingOutcome.REQUEUED

        if job.is_terminal():
            job_logger.info("Job already finished, acknowledging redelivery", status=job.status)
            await self._ack(delivery)
            return ProcessingOutcome.SKIPPED_TERMINAL

        try:
            claimed = await self.store.update(
                job.id,
                expected_status=(JobStatus.PENDING, JobStatus.PROCESSING),
                status=JobStatus.PROCESSING,
            )
        except StorageError:
            job_logger.exception("Failed to mark job processing, requeueing message")
            await self._nack(delivery, requeue=True)
            return ProcessingOutcome.REQUEUED

        if not claimed:
            job_logger.info("Job finished or removed concurrently, acknowledging")
            await self._ack(delivery)
            return ProcessingOutcome.SKIPPED_TERMINAL

        job_logger.info(
            "Processing job",
            attempt=job.retry_count + 1,
            max_attempts=self.retry_policy.max_retries + 1,
        )

        try:
            artifact_reference = await self._run_work(job)
        except Exception as e:
            return await self._handle_failure(delivery, job, e, job_logger)

        try:
            recorded = await self.store.update(
                job.id,
                expected_status=(JobStatus.PROCESSING,),
                status=JobStatus.COMPLETED,
                artifact_reference=artifact_reference,
                failure_reason=None,
            )
        except StorageError:
            job_logger.exception("Failed to record completion, requeueing message")
            await self._nack(delivery, requeue=True)
            return ProcessingOutcome.REQUEUED

        if not recorded:
            job_logger.warning("Job left processing state before completion was recorded")
        else:
            job_logger.info("Job completed", artifact_reference=artifact_reference)
        await self._ack(delivery)
        return ProcessingOutcome.COMPLETED

    async def _run_work(self, job: Job) -> str:
        if self.work is not None:
            pending = self.work(job)
        else:
            pending = self.handlers.resolve(job.job_type)(job, self.settings)

        timeout_s = self.settings.job_work_timeout_s
        try:
            return await asyncio.wait_for(pending, timeout=timeout_s)
        except TimeoutError as e:
            raise TransientError(f"work timed out after {timeout_s}s") from e

    async def _handle_failure(
        self, delivery: Delivery, job: Job, error: Exception, job_logger
    ) -> ProcessingOutcome:
        decision = self.retry_policy.evaluate(job.retry_count, error)

        if decision is RetryDecision.RETRY:
            retry_count = job.retry_count + 1
            fields = {
                "status": JobStatus.PENDING,
                "retry_count": retry_count,
                "failure_reason": describe_error(error),
                "artifact_reference": None,
            }
            outcome = ProcessingOutcome.RETRY_SCHEDULED
        else:
            fields = {
                "status": JobStatus.FAILED,
                "failure_reason": self.retry_policy.failure_reason(error),
                "artifact_reference": None,
            }
            outcome = ProcessingOutcome.DEAD_LETTERED

        try:
            await self.store.update(job.id, **fields)
        except NotFoundError:
            job_logger.warning("Job record disappeared during failure handling")
            await self._ack(delivery)
            return ProcessingOutcome.DISCARDED
        except StorageError:
            # Retry accounting not recorded: redeliver without consuming a retry
            job_logger.exception("Failed to record job failure, requeueing message")
            await self._nack(delivery, requeue=True)
            return ProcessingOutcome.REQUEUED

        if outcome is ProcessingOutcome.RETRY_SCHEDULED:
            job_logger.warning(
                "Job attempt failed, retrying",
                error=describe_error(error),
                retry_count=fields["retry_count"],
                max_retries=self.retry_policy.max_retries,
            )
            await self._nack(delivery, requeue=True)
        else:
            job_logger.error(
                "Job failed permanently, dead-lettering message",
                error=describe_error(error),
                error_type=error.__class__.__name__,
                retry_count=job.retry_count,
            )
            await self._nack(delivery, requeue=False)
        return outcome

    async def _ack(self, delivery: Delivery) -> None:
        try:
            await self.broker.ack(delivery)
        except QueueError:
            # The broker redelivers unsettled messages once the channel is back
            logger.exception("Failed to ack delivery", worker_id=self.worker_id)

    async def _nack(self, delivery: Delivery, requeue: bool) -> None:
        try:
            await self.broker.nack(delivery, requeue=requeue)
        except QueueError:
            logger.exception(
                "Failed to nack delivery", worker_id=self.worker_id, requeue=requeue
            )
