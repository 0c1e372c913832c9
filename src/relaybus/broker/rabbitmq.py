"""RabbitMQ-backed broker provider."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import aio_pika
from aio_pika.abc import (
    AbstractChannel,
    AbstractIncomingMessage,
    AbstractQueue,
    AbstractRobustConnection,
)
from aio_pika.exceptions import AMQPError

from relaybus.broker.base import DeliveryHandle, EventHandler
from relaybus.broker.errors import (
    BrokerConnectionError,
    DeserializationError,
    NotInitializedError,
    PublishError,
    RedeliverError,
)
from relaybus.config.settings import RabbitMQConfig
from relaybus.contracts.events import AgentInvocationEvent, decode_event, encode_event

logger = logging.getLogger(__name__)


class RabbitMQBrokerProvider:
    """Durable queue dead-lettered through a direct exchange.

    Publishing goes through a confirm channel, so ``publish`` returns only
    after the broker acknowledged the message. Consumers use manual acks with
    a bounded prefetch; a nack without requeue is routed to the dead-letter
    queue by the broker itself.
    """

    name = "rabbitmq"

    def __init__(self, config: RabbitMQConfig) -> None:
        self._config = config
        self._connection: AbstractRobustConnection | None = None
        self._publish_channel: AbstractChannel | None = None
        self._consume_channel: AbstractChannel | None = None
        self._queue: AbstractQueue | None = None
        self._consumer_tag: str | None = None
        self._handler: EventHandler | None = None
        self._inflight: dict[DeliveryHandle, AbstractIncomingMessage] = {}
        self._shutting_down = False

    async def initialize(self) -> None:
        try:
            self._connection = await aio_pika.connect_robust(self._config.url)
            self._publish_channel = await self._connection.channel(publisher_confirms=True)
            await self._setup_topology(self._publish_channel)
        except (AMQPError, OSError) as exc:
            await self.shutdown()
            raise BrokerConnectionError(f"RabbitMQ unreachable: {exc}") from exc
        self._shutting_down = False
        logger.info("rabbitmq.connected", extra={"extra": {"queue": self._config.queue}})

    async def publish(self, event: AgentInvocationEvent) -> None:
        if self._publish_channel is None:
            raise NotInitializedError("RabbitMQ publish channel not initialized")
        message = aio_pika.Message(
            body=encode_event(event).encode("utf-8"),
            content_type="application/json",
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            message_id=str(event.id),
            headers={
                "channel": event.channel.value,
                "agentId": event.agent_id,
                "organizationId": event.organization_id,
            },
        )
        try:
            confirmation = await self._publish_channel.default_exchange.publish(
                message, routing_key=self._config.queue
            )
        except (AMQPError, OSError) as exc:
            raise PublishError(f"RabbitMQ publish failed for event {event.id}: {exc}") from exc
        if not _is_ack(confirmation):
            raise PublishError(f"RabbitMQ did not confirm event {event.id}: {confirmation!r}")
        logger.debug(
            "rabbitmq.published",
            extra={"extra": {"event_id": str(event.id), "queue": self._config.queue}},
        )

    async def subscribe(self, handler: EventHandler) -> None:
        if self._connection is None:
            raise NotInitializedError("RabbitMQ not initialized")
        self._handler = handler
        self._consume_channel = await self._connection.channel()
        await self._consume_channel.set_qos(prefetch_count=self._config.prefetch_count)
        self._queue = await self._consume_channel.declare_queue(
            self._config.queue, durable=True, arguments=self._queue_arguments()
        )
        self._consumer_tag = await self._queue.consume(self._on_message, no_ack=False)
        logger.info(
            "rabbitmq.consumer_started",
            extra={"extra": {"queue": self._config.queue, "prefetch": self._config.prefetch_count}},
        )

    async def acknowledge(self, handle: DeliveryHandle) -> None:
        message = self._inflight.pop(handle, None)
        if message is None:
            logger.warning("rabbitmq.unknown_delivery", extra={"extra": {"handle": handle}})
            return
        await message.ack()

    async def reject(self, handle: DeliveryHandle, requeue: bool) -> None:
        message = self._inflight.pop(handle, None)
        if message is None:
            logger.warning("rabbitmq.unknown_delivery", extra={"extra": {"handle": handle}})
            return
        await message.nack(requeue=requeue)

    async def health_check(self) -> bool:
        connection = self._connection
        if connection is None or connection.is_closed:
            return False
        try:
            channel = await connection.channel(publisher_confirms=False)
            await channel.close()
        except Exception as exc:  # noqa: BLE001
            logger.error("rabbitmq.health_check_failed", extra={"extra": {"error": str(exc)}})
            return False
        return True

    async def shutdown(self) -> None:
        self._shutting_down = True
        queue, self._queue = self._queue, None
        tag, self._consumer_tag = self._consumer_tag, None
        if queue is not None and tag is not None:
            await queue.cancel(tag)
        await self._wait_for_inflight()

        for attr in ("_consume_channel", "_publish_channel"):
            channel = getattr(self, attr)
            setattr(self, attr, None)
            if channel is not None and not channel.is_closed:
                await channel.close()

        connection, self._connection = self._connection, None
        if connection is not None:
            await connection.close()
        self._handler = None
        logger.info("rabbitmq.shutdown_complete")

    async def _wait_for_inflight(self) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._config.shutdown_timeout_s
        while self._inflight and loop.time() < deadline:
            await asyncio.sleep(0.05)
        if self._inflight:
            logger.warning(
                "rabbitmq.shutdown_with_inflight",
                extra={"extra": {"inflight": len(self._inflight)}},
            )

    def _queue_arguments(self) -> dict[str, Any]:
        return {
            "x-dead-letter-exchange": self._config.dlx_exchange,
            "x-dead-letter-routing-key": self._config.queue,
        }

    async def _setup_topology(self, channel: AbstractChannel) -> None:
        dlx = await channel.declare_exchange(
            self._config.dlx_exchange, aio_pika.ExchangeType.DIRECT, durable=True
        )
        dlq = await channel.declare_queue(self._config.dlq, durable=True)
        # Dead letters keep the main queue name as routing key.
        await dlq.bind(dlx, routing_key=self._config.queue)
        await channel.declare_queue(
            self._config.queue, durable=True, arguments=self._queue_arguments()
        )
        logger.info(
            "rabbitmq.topology_ready",
            extra={"extra": {"queue": self._config.queue, "dlq": self._config.dlq}},
        )

    async def _on_message(self, message: AbstractIncomingMessage) -> None:
        if self._handler is None or self._shutting_down:
            await message.nack(requeue=True)
            return

        handle = str(message.delivery_tag)
        self._inflight[handle] = message
        try:
            event = decode_event(message.body)
        except DeserializationError as exc:
            logger.error(
                "rabbitmq.parse_failed",
                extra={"extra": {"delivery_tag": message.delivery_tag, "error": str(exc)}},
            )
            await self.reject(handle, requeue=False)
            return

        logger.debug(
            "rabbitmq.processing",
            extra={"extra": {"event_id": str(event.id), "delivery_tag": message.delivery_tag}},
        )
        try:
            await self._handler(event)
        except RedeliverError:
            await self.reject(handle, requeue=True)
            return
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "rabbitmq.handler_failed",
                extra={"extra": {"event_id": str(event.id), "error": str(exc)}},
            )
            await self.reject(handle, requeue=False)
            return
        await self.acknowledge(handle)


def _is_ack(confirmation: Any) -> bool:
    # Confirm channels resolve to a Basic.Ack / Basic.Nack frame.
    return confirmation is None or getattr(confirmation, "name", "Basic.Ack") == "Basic.Ack"
