"""
RabbitMQ broker client.

Topology: a durable direct exchange bound to a durable work queue whose
dead-letter exchange/routing key point at a second durable exchange/queue
pair. A nack without requeue on the work queue is dead-lettered by RabbitMQ
itself; application code never publishes to the dead-letter queue.
"""

import asyncio
import json
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol

import aio_pika
from aio_pika import DeliveryMode, ExchangeType, Message
from aio_pika.abc import (
    AbstractChannel,
    AbstractExchange,
    AbstractQueue,
    AbstractRobustConnection,
)
from aio_pika.exceptions import AMQPException, ChannelInvalidStateError

from reportq.config.logging import get_logger
from reportq.config.settings import Settings
from reportq.v1.core.exceptions import QueueError
from reportq.v1.jobs.retry import backoff_delay

logger = get_logger(__name__)

# ChannelInvalidStateError (closed channel) is a RuntimeError, not an AMQPException
BROKER_ERRORS = (AMQPException, ChannelInvalidStateError, OSError, asyncio.TimeoutError)


@dataclass(frozen=True)
class BrokerTopology:
    """Names of the live and dead-letter exchange/queue pairs."""

    exchange: str
    queue: str
    routing_key: str
    dlq_exchange: str
    dlq_queue: str
    dlq_routing_key: str

    @classmethod
    def from_settings(cls, settings: Settings) -> "BrokerTopology":
        return cls(
            exchange=settings.rabbitmq_exchange,
            queue=settings.rabbitmq_queue,
            routing_key=settings.rabbitmq_routing_key,
            dlq_exchange=settings.rabbitmq_dlq_exchange,
            dlq_queue=settings.rabbitmq_dlq_queue,
            dlq_routing_key=settings.rabbitmq_dlq_routing_key,
        )

    @property
    def queue_arguments(self) -> dict[str, Any]:
        """Arguments that route rejected work messages to the dead-letter pair."""
        return {
            "x-dead-letter-exchange": self.dlq_exchange,
            "x-dead-letter-routing-key": self.dlq_routing_key,
        }


@dataclass
class Delivery:
    """A consumed message plus the broker handle used to settle it once."""

    body: bytes
    delivery_tag: int | None = None
    redelivered: bool = False
    handle: Any = field(default=None, repr=False)
    settled: bool = False

    def mark_settled(self) -> None:
        if self.settled:
            raise RuntimeError(
                f"Delivery {self.delivery_tag} has already been acked or nacked"
            )
        self.settled = True


class MessageBroker(Protocol):
    """Broker contract used by the ingestor and the job processor."""

    topology: BrokerTopology

    async def declare_topology(self) -> None: ...

    async def publish(
        self,
        exchange: str,
        routing_key: str,
        message: dict[str, Any],
        durable: bool = True,
    ) -> None: ...

    def consume(self, queue: str, prefetch: int = 1) -> AsyncIterator[Delivery]: ...

    async def ack(self, delivery: Delivery) -> None: ...

    async def nack(self, delivery: Delivery, requeue: bool) -> None: ...


class RabbitMQBroker:
    """aio-pika implementation of the broker contract."""

    def __init__(
        self,
        url: str,
        topology: BrokerTopology,
        connect_attempts: int = 10,
        connect_delay_s: float = 3.0,
        max_connect_delay_s: float = 30.0,
    ):
        self.url = url
        self.topology = topology
        self.connect_attempts = connect_attempts
        self.connect_delay_s = connect_delay_s
        self.max_connect_delay_s = max_connect_delay_s
        self._connection: AbstractRobustConnection | None = None
        self._channel: AbstractChannel | None = None
        self._exchanges: dict[str, AbstractExchange] = {}
        self._queues: dict[str, AbstractQueue] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> "RabbitMQBroker":
        return cls(
            url=settings.rabbitmq_url,
            topology=BrokerTopology.from_settings(settings),
            connect_attempts=settings.rabbitmq_connect_attempts,
            connect_delay_s=settings.rabbitmq_connect_delay_s,
            max_connect_delay_s=settings.rabbitmq_max_connect_delay_s,
        )

    @property
    def is_connected(self) -> bool:
        return self._connection is not None and not self._connection.is_closed

    async def connect(self) -> None:
        """Open a robust connection and declare the topology, with bounded retries."""
        for attempt in range(1, self.connect_attempts + 1):
            try:
                self._connection = await aio_pika.connect_robust(self.url)
                self._channel = await self._connection.channel(publisher_confirms=True)
                self._connection.reconnect_callbacks.add(self._on_reconnect)
                await self.declare_topology()
            except BROKER_ERRORS as e:
                await self._discard_connection()
                logger.warning(
                    "Failed to connect to RabbitMQ",
                    attempt=attempt,
                    max_attempts=self.connect_attempts,
                    error=str(e),
                )
                if attempt >= self.connect_attempts:
                    raise QueueError(
                        "Could not connect to RabbitMQ",
                        details={"attempts": attempt, "error": str(e)},
                    ) from e
                await asyncio.sleep(
                    backoff_delay(attempt, self.connect_delay_s, self.max_connect_delay_s)
                )
            else:
                logger.info(
                    "Connected to RabbitMQ",
                    queue=self.topology.queue,
                    dlq=self.topology.dlq_queue,
                )
                return

    async def _discard_connection(self) -> None:
        """Close a half-opened connection so it stops reconnecting in the background."""
        connection, self._connection = self._connection, None
        self._channel = None
        if connection is None:
            return
        try:
            await connection.close()
        except BROKER_ERRORS as e:
            logger.debug("Ignoring error while closing RabbitMQ connection", error=str(e))

    def _on_reconnect(self, *args: Any) -> None:
        # The robust channel re-declares everything declared through it
        logger.warning("RabbitMQ connection re-established, topology restored")

    def _require_channel(self) -> AbstractChannel:
        if self._channel is None:
            raise QueueError("Broker is not connected")
        return self._channel

    async def declare_topology(self) -> None:
        """Declare exchanges, queues and bindings. Safe to repeat."""
        channel = self._require_channel()
        t = self.topology
        try:
            exchange = await channel.declare_exchange(
                t.exchange, ExchangeType.DIRECT, durable=True
            )
            dlq_exchange = await channel.declare_exchange(
                t.dlq_exchange, ExchangeType.DIRECT, durable=True
            )

            dlq = await channel.declare_queue(t.dlq_queue, durable=True)
            await dlq.bind(dlq_exchange, routing_key=t.dlq_routing_key)

            queue = await channel.declare_queue(
                t.queue, durable=True, arguments=t.queue_arguments
            )
            await queue.bind(exchange, routing_key=t.routing_key)
        except BROKER_ERRORS as e:
            raise QueueError(
                "Failed to declare broker topology", details={"error": str(e)}
            ) from e

        self._exchanges = {t.exchange: exchange, t.dlq_exchange: dlq_exchange}
        self._queues = {t.queue: queue, t.dlq_queue: dlq}

    async def publish(
        self,
        exchange: str,
        routing_key: str,
        message: dict[str, Any],
        durable: bool = True,
    ) -> None:
        """Publish a JSON message; returns once the broker confirmed it."""
        target = self._exchanges.get(exchange)
        if target is None:
            raise QueueError(
                "Exchange has not been declared", details={"exchange": exchange}
            )

        amqp_message = Message(
            json.dumps(message).encode("utf-8"),
            content_type="application/json",
            delivery_mode=(
                DeliveryMode.PERSISTENT if durable else DeliveryMode.NOT_PERSISTENT
            ),
            message_id=str(message.get("job_id", "")) or None,
            timestamp=datetime.now(UTC),
        )
        try:
            await target.publish(amqp_message, routing_key=routing_key)
        except BROKER_ERRORS as e:
            raise QueueError(
                "Failed to publish message",
                details={"exchange": exchange, "routing_key": routing_key, "error": str(e)},
            ) from e

    async def consume(self, queue: str, prefetch: int = 1) -> AsyncIterator[Delivery]:
        """Yield deliveries from a queue with manual acknowledgement."""
        channel = self._require_channel()
        source = self._queues.get(queue)
        if source is None:
            raise QueueError("Queue has not been declared", details={"queue": queue})

        try:
            await channel.set_qos(prefetch_count=prefetch)
            async with source.iterator() as queue_iter:
                async for message in queue_iter:
                    yield Delivery(
                        body=message.body,
                        delivery_tag=message.delivery_tag,
                        redelivered=bool(message.redelivered),
                        handle=message,
                    )
        except BROKER_ERRORS as e:
            raise QueueError(
                "Consumer lost its connection", details={"queue": queue, "error": str(e)}
            ) from e

    async def ack(self, delivery: Delivery) -> None:
        delivery.mark_settled()
        try:
            await delivery.handle.ack()
        except BROKER_ERRORS as e:
            raise QueueError("Failed to ack message", details={"error": str(e)}) from e

    async def nack(self, delivery: Delivery, requeue: bool) -> None:
        delivery.mark_settled()
        try:
            await delivery.handle.nack(requeue=requeue)
        except BROKER_ERRORS as e:
            raise QueueError("Failed to nack message", details={"error": str(e)}) from e

    async def close(self) -> None:
        if self._connection is not None:
            await self._connection.close()
        self._connection = None
        self._channel = None
