"""Kafka-backed broker provider."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer, TopicPartition
from aiokafka.admin import AIOKafkaAdminClient, NewTopic
from aiokafka.errors import KafkaError

from relaybus.broker.base import DeliveryHandle, EventHandler
from relaybus.broker.errors import (
    BrokerConnectionError,
    DeserializationError,
    NotInitializedError,
    PublishError,
    RedeliverError,
)
from relaybus.config.settings import KafkaConfig
from relaybus.contracts.events import (
    AgentInvocationEvent,
    DeadLetterRecord,
    decode_event,
    encode_dead_letter,
    encode_event,
)
from relaybus.contracts.types import DeadLetterReason

logger = logging.getLogger(__name__)


class KafkaBrokerProvider:
    """Partitioned log with consumer groups.

    Events are keyed by agent id, so all events of one agent land on one
    partition and are consumed in publish order. Offsets are committed once a
    message was handled or dead-lettered; returning from the handler is the
    acknowledgment. Anything that prevents a commit rewinds the partition to
    the first uncommitted offset, so the message is consumed again.
    """

    name = "kafka"

    def __init__(self, config: KafkaConfig) -> None:
        self._config = config
        self._producer: AIOKafkaProducer | None = None
        self._consumer: AIOKafkaConsumer | None = None
        self._handler: EventHandler | None = None
        self._consume_task: asyncio.Task[None] | None = None
        self._shutting_down = False

    async def initialize(self) -> None:
        producer = AIOKafkaProducer(
            bootstrap_servers=self._bootstrap,
            client_id=self._config.client_id,
            acks="all",
            enable_idempotence=True,
        )
        try:
            await producer.start()
            await self._ensure_topics()
        except BrokerConnectionError:
            await producer.stop()
            raise
        except (KafkaError, OSError) as exc:
            await producer.stop()
            raise BrokerConnectionError(
                f"Kafka brokers unreachable at {self._config.brokers}: {exc}"
            ) from exc
        self._producer = producer
        self._shutting_down = False
        logger.info(
            "kafka.producer_connected",
            extra={"extra": {"brokers": self._config.brokers, "client_id": self._config.client_id}},
        )

    async def publish(self, event: AgentInvocationEvent) -> None:
        if self._producer is None:
            raise NotInitializedError("Kafka producer not initialized")
        try:
            await self._producer.send_and_wait(
                self._config.topic,
                value=encode_event(event).encode("utf-8"),
                key=event.agent_id.encode("utf-8"),
                headers=[
                    ("eventId", str(event.id).encode("utf-8")),
                    ("channel", event.channel.value.encode("utf-8")),
                    ("organizationId", event.organization_id.encode("utf-8")),
                ],
            )
        except KafkaError as exc:
            raise PublishError(f"Kafka rejected event {event.id}: {exc}") from exc
        logger.debug(
            "kafka.published",
            extra={"extra": {"event_id": str(event.id), "topic": self._config.topic}},
        )

    async def subscribe(self, handler: EventHandler) -> None:
        if self._producer is None:
            raise NotInitializedError("Kafka not initialized")
        self._handler = handler
        consumer = AIOKafkaConsumer(
            self._config.topic,
            bootstrap_servers=self._bootstrap,
            client_id=self._config.client_id,
            group_id=self._config.group_id,
            enable_auto_commit=False,
            auto_offset_reset="latest",
            session_timeout_ms=self._config.session_timeout_ms,
            heartbeat_interval_ms=self._config.heartbeat_interval_ms,
        )
        try:
            await consumer.start()
        except (KafkaError, OSError) as exc:
            await consumer.stop()
            raise BrokerConnectionError(f"Kafka consumer failed to start: {exc}") from exc
        self._consumer = consumer
        self._start_consuming(consumer)
        logger.info(
            "kafka.consumer_subscribed",
            extra={"extra": {"group_id": self._config.group_id, "topic": self._config.topic}},
        )

    async def acknowledge(self, handle: DeliveryHandle) -> None:
        # Offsets are committed by the consumption loop after the handler returns.
        logger.debug("kafka.acknowledged", extra={"extra": {"handle": handle}})

    async def reject(self, handle: DeliveryHandle, requeue: bool) -> None:
        # requeue=True relies on the rewind; requeue=False is dead-lettered by the loop.
        logger.warning(
            "kafka.rejected",
            extra={"extra": {"handle": handle, "requeue": requeue, "dlq_topic": self._config.dlq_topic}},
        )

    async def health_check(self) -> bool:
        if self._producer is None:
            return False
        task = self._consume_task
        if task is not None and task.done():
            logger.error("kafka.consumer_stopped")
            return False
        try:
            await self._producer.client.fetch_all_metadata()
        except Exception as exc:  # noqa: BLE001
            logger.error("kafka.health_check_failed", extra={"extra": {"error": str(exc)}})
            return False
        return True

    async def shutdown(self) -> None:
        self._shutting_down = True
        task, self._consume_task = self._consume_task, None
        if task is not None:
            done, _ = await asyncio.wait({task}, timeout=self._config.shutdown_timeout_s)
            if not done:
                logger.warning(
                    "kafka.shutdown_timeout",
                    extra={"extra": {"timeout_s": self._config.shutdown_timeout_s}},
                )
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)

        consumer, self._consumer = self._consumer, None
        if consumer is not None:
            await consumer.stop()

        producer, self._producer = self._producer, None
        if producer is not None:
            await producer.stop()
        self._handler = None
        logger.info("kafka.shutdown_complete")

    @property
    def _bootstrap(self) -> str:
        return ",".join(self._config.brokers)

    async def _ensure_topics(self) -> None:
        """Create the event and dead-letter topics if missing, then verify both exist."""
        wanted = [self._config.topic, self._config.dlq_topic]
        admin = AIOKafkaAdminClient(
            bootstrap_servers=self._bootstrap, client_id=self._config.client_id
        )
        await admin.start()
        try:
            missing = [name for name in wanted if name not in set(await admin.list_topics())]
            if missing and self._config.create_topics:
                await admin.create_topics(
                    [
                        NewTopic(
                            name,
                            num_partitions=self._config.num_partitions,
                            replication_factor=self._config.replication_factor,
                        )
                        for name in missing
                    ]
                )
                logger.info("kafka.topics_created", extra={"extra": {"topics": missing}})
                existing = set(await admin.list_topics())
                missing = [name for name in wanted if name not in existing]
        finally:
            await admin.close()
        if missing:
            raise BrokerConnectionError(f"Kafka topics missing: {', '.join(missing)}")

    def _start_consuming(self, consumer: AIOKafkaConsumer) -> None:
        task = asyncio.create_task(self._consume(consumer), name="relaybus-kafka-consumer")
        task.add_done_callback(self._on_consume_done)
        self._consume_task = task

    def _on_consume_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            if not self._shutting_down:
                logger.error("kafka.consumer_cancelled")
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "kafka.consumer_crashed",
                exc_info=exc,
                extra={"extra": {"error_type": type(exc).__name__, "error": str(exc)}},
            )
        elif not self._shutting_down:
            logger.error("kafka.consumer_exited")

    async def _consume(self, consumer: AIOKafkaConsumer) -> None:
        while not self._shutting_down:
            try:
                batches = await consumer.getmany(timeout_ms=self._config.poll_timeout_ms)
            except KafkaError as exc:
                logger.error("kafka.poll_failed", extra={"extra": {"error": str(exc)}})
                await asyncio.sleep(self._config.poll_timeout_ms / 1000)
                continue
            for tp, messages in batches.items():
                await self._consume_partition(consumer, tp, messages)

    async def _consume_partition(
        self, consumer: AIOKafkaConsumer, tp: TopicPartition, messages: list[Any]
    ) -> None:
        for message in messages:
            if self._shutting_down:
                # Uncommitted; the group redelivers from here after restart.
                self._rewind(consumer, tp, message.offset)
                return
            if not await self._process_message(message):
                self._rewind(consumer, tp, message.offset)
                return
            try:
                await consumer.commit({tp: message.offset + 1})
            except KafkaError as exc:
                # Typically a rebalance: the next owner resumes from the last commit.
                logger.error(
                    "kafka.commit_failed",
                    extra={
                        "extra": {
                            "partition": tp.partition,
                            "offset": message.offset,
                            "error_type": type(exc).__name__,
                            "error": str(exc),
                        }
                    },
                )
                self._rewind(consumer, tp, message.offset)
                return

    @staticmethod
    def _rewind(consumer: AIOKafkaConsumer, tp: TopicPartition, offset: int) -> None:
        try:
            consumer.seek(tp, offset)
        except KafkaError as exc:
            # Partition no longer assigned; its new owner starts from the committed offset.
            logger.warning(
                "kafka.seek_failed",
                extra={"extra": {"partition": tp.partition, "offset": offset, "error": str(exc)}},
            )

    async def _process_message(self, message: Any) -> bool:
        """Handle one record. Returns False when its offset must not be committed."""
        handler = self._handler
        if handler is None:
            return False

        raw: bytes | None = message.value
        if not raw:
            logger.warning(
                "kafka.empty_message",
                extra={"extra": {"partition": message.partition, "offset": message.offset}},
            )
            return True
        value = raw.decode("utf-8", errors="replace")

        try:
            event = decode_event(value)
        except DeserializationError as exc:
            logger.error(
                "kafka.parse_failed",
                extra={
                    "extra": {
                        "partition": message.partition,
                        "offset": message.offset,
                        "error": str(exc),
                    }
                },
            )
            return await self._send_to_dlq(value, DeadLetterReason.PARSE_ERROR, exc)

        logger.debug(
            "kafka.processing",
            extra={"extra": {"event_id": str(event.id), "partition": message.partition}},
        )
        try:
            await handler(event)
        except RedeliverError:
            await self.reject(str(message.offset), requeue=True)
            return False
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "kafka.handler_failed",
                extra={"extra": {"event_id": str(event.id), "error": str(exc)}},
            )
            return await self._send_to_dlq(value, DeadLetterReason.HANDLER_ERROR, exc)
        return True

    async def _send_to_dlq(
        self, original_message: str, reason: DeadLetterReason, error: Exception
    ) -> bool:
        if self._producer is None:
            return False
        record = DeadLetterRecord(
            original_message=original_message,
            error_type=reason,
            error_message=str(error),
        )
        try:
            await self._producer.send_and_wait(
                self._config.dlq_topic, value=encode_dead_letter(record).encode("utf-8")
            )
        except KafkaError as exc:
            logger.error(
                "kafka.dlq_failed",
                extra={"extra": {"dlq_topic": self._config.dlq_topic, "error": str(exc)}},
            )
            return False
        logger.warning(
            "kafka.dead_lettered",
            extra={"extra": {"dlq_topic": self._config.dlq_topic, "error_type": reason.value}},
        )
        return True
