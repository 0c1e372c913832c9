"""Redis Streams-backed broker provider."""

from __future__ import annotations

import asyncio
import logging
import os
import time
from typing import Any

import redis.asyncio as aioredis
from redis.exceptions import RedisError, ResponseError

from relaybus.broker.base import DeliveryHandle, EventHandler
from relaybus.broker.errors import (
    BrokerConnectionError,
    DeserializationError,
    NotInitializedError,
    PublishError,
    RedeliverError,
)
from relaybus.config.settings import RedisConfig
from relaybus.contracts.events import (
    AgentInvocationEvent,
    DeadLetterRecord,
    dead_letter_fields,
    decode_event,
    encode_event,
)
from relaybus.contracts.types import DeadLetterReason

logger = logging.getLogger(__name__)

StreamEntry = tuple[str, dict[str, str]]


class RedisBrokerProvider:
    """Stream plus consumer group, consumed by a self-rescheduling poll.

    Each cycle reclaims entries left pending by dead consumers, reads up to
    ``batch_size`` new entries with a blocking group read, processes them in
    order and schedules the next cycle ``poll_interval_ms`` later. A failed
    entry is acknowledged only after it was written to ``<stream>-dlq``.
    """

    name = "redis"

    def __init__(self, config: RedisConfig, client: aioredis.Redis | None = None) -> None:
        self._config = config
        self._redis: aioredis.Redis | None = client
        self._handler: EventHandler | None = None
        self._consumer_id = f"consumer-{os.getpid()}-{int(time.time() * 1000)}"
        self._poll_timer: asyncio.TimerHandle | None = None
        self._poll_task: asyncio.Task[None] | None = None
        self._shutting_down = False

    @property
    def consumer_id(self) -> str:
        return self._consumer_id

    async def initialize(self) -> None:
        if self._redis is None:
            self._redis = aioredis.from_url(self._config.url, decode_responses=True)
        try:
            await self._redis.ping()
            await self._redis.xgroup_create(
                self._config.stream, self._config.consumer_group, id="0", mkstream=True
            )
            logger.info(
                "redis.group_created",
                extra={
                    "extra": {"stream": self._config.stream, "group": self._config.consumer_group}
                },
            )
        except ResponseError as exc:
            if "BUSYGROUP" not in str(exc):
                raise BrokerConnectionError(f"Redis rejected group setup: {exc}") from exc
        except (RedisError, OSError) as exc:
            raise BrokerConnectionError(f"Redis unreachable: {exc}") from exc
        self._shutting_down = False
        logger.info("redis.connected", extra={"extra": {"stream": self._config.stream}})

    async def publish(self, event: AgentInvocationEvent) -> None:
        if self._redis is None:
            raise NotInitializedError("Redis not initialized")
        try:
            entry_id = await self._redis.xadd(self._config.stream, {"event": encode_event(event)})
        except (RedisError, OSError) as exc:
            raise PublishError(f"Redis XADD failed for event {event.id}: {exc}") from exc
        logger.debug(
            "redis.published",
            extra={"extra": {"event_id": str(event.id), "entry_id": entry_id}},
        )

    async def subscribe(self, handler: EventHandler) -> None:
        if self._redis is None:
            raise NotInitializedError("Redis not initialized")
        self._handler = handler
        logger.info(
            "redis.consumer_started",
            extra={
                "extra": {
                    "stream": self._config.stream,
                    "group": self._config.consumer_group,
                    "consumer_id": self._consumer_id,
                }
            },
        )
        self._start_poll()

    async def acknowledge(self, handle: DeliveryHandle) -> None:
        if self._redis is None:
            logger.warning("redis.ack_skipped", extra={"extra": {"entry_id": handle}})
            return
        await self._redis.xack(self._config.stream, self._config.consumer_group, handle)
        logger.debug("redis.acknowledged", extra={"extra": {"entry_id": handle}})

    async def reject(self, handle: DeliveryHandle, requeue: bool) -> None:
        if requeue:
            # Left pending; reclaimed by a later poll once idle long enough.
            logger.info("redis.left_pending", extra={"extra": {"entry_id": handle}})
            return
        await self.acknowledge(handle)

    async def health_check(self) -> bool:
        if self._redis is None:
            return False
        try:
            return bool(await self._redis.ping())
        except (RedisError, OSError) as exc:
            logger.error("redis.health_check_failed", extra={"extra": {"error": str(exc)}})
            return False

    async def shutdown(self) -> None:
        self._shutting_down = True
        if self._poll_timer is not None:
            self._poll_timer.cancel()
            self._poll_timer = None
        await self._wait_for_poll()
        client, self._redis = self._redis, None
        if client is not None:
            await client.aclose()
        self._handler = None
        logger.info("redis.shutdown_complete")

    async def _wait_for_poll(self) -> None:
        task, self._poll_task = self._poll_task, None
        if task is None or task is asyncio.current_task():
            return
        # The in-flight entry still needs the client for its ack or dead-letter write.
        done, _ = await asyncio.wait({task}, timeout=self._config.shutdown_timeout_s)
        if not done:
            logger.warning(
                "redis.shutdown_timeout",
                extra={"extra": {"timeout_s": self._config.shutdown_timeout_s}},
            )
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    def _start_poll(self) -> None:
        self._poll_timer = None
        if self._shutting_down or self._redis is None or self._handler is None:
            return
        self._poll_task = asyncio.get_running_loop().create_task(
            self._poll(), name="relaybus-redis-poll"
        )

    def _schedule_poll(self) -> None:
        if self._shutting_down:
            return
        loop = asyncio.get_running_loop()
        self._poll_timer = loop.call_later(self._config.poll_interval_ms / 1000, self._start_poll)

    async def _poll(self) -> None:
        try:
            await self._read_messages()
        except Exception as exc:  # noqa: BLE001
            if not self._shutting_down:
                logger.error("redis.poll_failed", extra={"extra": {"error": str(exc)}})
        finally:
            self._schedule_poll()

    async def _read_messages(self) -> None:
        client = self._redis
        if client is None or self._handler is None:
            return
        entries: list[StreamEntry] = []
        if self._config.claim_idle_ms > 0:
            entries.extend(await self._reclaim(client))
        results = await client.xreadgroup(
            self._config.consumer_group,
            self._consumer_id,
            streams={self._config.stream: ">"},
            count=self._config.batch_size,
            block=self._config.block_ms,
        )
        for _stream, messages in _stream_results(results):
            entries.extend(messages)
        for entry_id, fields in entries:
            if self._shutting_down:
                # Unprocessed entries stay pending and are reclaimed later.
                return
            await self._process_message(entry_id, fields)

    async def _reclaim(self, client: aioredis.Redis) -> list[StreamEntry]:
        result = await client.xautoclaim(
            self._config.stream,
            self._config.consumer_group,
            self._consumer_id,
            min_idle_time=self._config.claim_idle_ms,
            start_id="0-0",
            count=self._config.batch_size,
        )
        claimed = result[1] if result and len(result) > 1 else []
        entries = [(entry_id, fields) for entry_id, fields in claimed if fields]
        if entries:
            logger.info("redis.reclaimed", extra={"extra": {"count": len(entries)}})
        return entries

    async def _process_message(self, entry_id: str, fields: dict[str, str]) -> None:
        handler = self._handler
        if handler is None:
            return
        raw = fields.get("event")
        if not raw:
            logger.warning("redis.missing_event_field", extra={"extra": {"entry_id": entry_id}})
            await self.acknowledge(entry_id)
            return

        try:
            event = decode_event(raw)
        except DeserializationError as exc:
            logger.error(
                "redis.parse_failed",
                extra={"extra": {"entry_id": entry_id, "error": str(exc)}},
            )
            await self._dead_letter(entry_id, raw, DeadLetterReason.PARSE_ERROR, exc)
            return

        logger.debug(
            "redis.processing",
            extra={"extra": {"event_id": str(event.id), "entry_id": entry_id}},
        )
        try:
            await handler(event)
        except RedeliverError:
            await self.reject(entry_id, requeue=True)
            return
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "redis.handler_failed",
                extra={"extra": {"event_id": str(event.id), "error": str(exc)}},
            )
            await self._dead_letter(entry_id, raw, DeadLetterReason.HANDLER_ERROR, exc)
            return
        await self.acknowledge(entry_id)

    async def _dead_letter(
        self, entry_id: str, raw: str, reason: DeadLetterReason, error: Exception
    ) -> None:
        client = self._redis
        if client is None:
            logger.error("redis.dlq_skipped", extra={"extra": {"entry_id": entry_id}})
            return
        record = DeadLetterRecord(
            original_message=raw,
            error_type=reason,
            error_message=str(error),
            original_message_id=entry_id,
        )
        try:
            await client.xadd(self._config.dlq_stream, dead_letter_fields(record))
        except (RedisError, OSError) as exc:
            logger.error(
                "redis.dlq_failed",
                extra={"extra": {"entry_id": entry_id, "error": str(exc)}},
            )
            await self.reject(entry_id, requeue=True)
            return
        await self.reject(entry_id, requeue=False)


def _stream_results(results: Any) -> list[tuple[str, list[StreamEntry]]]:
    # XREADGROUP replies with [[stream, [(entry_id, fields), ...]], ...] or None on timeout.
    if not results:
        return []
    return [(stream, entries) for stream, entries in results]
