"""In-process broker provider for local development and tests."""

from __future__ import annotations

import asyncio
from contextlib import suppress
import itertools
import logging

from relaybus.broker.base import DeliveryHandle, EventHandler
from relaybus.broker.errors import DeserializationError, NotInitializedError, RedeliverError
from relaybus.contracts.events import (
    AgentInvocationEvent,
    DeadLetterRecord,
    decode_event,
    encode_event,
)
from relaybus.contracts.types import DeadLetterReason

logger = logging.getLogger(__name__)


class InMemoryBrokerProvider:
    """Queue-backed provider with the same dead-letter policy as real brokers.

    Not durable across restarts. Messages are stored serialized so the
    consumer exercises the same decode path as the networked providers.
    Deliveries the handler refused with RedeliverError are held and handed
    to the next ``subscribe``.
    """

    name = "memory"

    def __init__(self) -> None:
        self._queue: asyncio.Queue[tuple[DeliveryHandle, str]] | None = None
        self._handler: EventHandler | None = None
        self._consumer: asyncio.Task[None] | None = None
        self._processing = asyncio.Lock()
        self._sequence = itertools.count(1)
        self._held: dict[DeliveryHandle, str] = {}
        self.pending: set[DeliveryHandle] = set()
        self.acknowledged: list[DeliveryHandle] = []
        self.dead_letters: list[DeadLetterRecord] = []

    async def initialize(self) -> None:
        if self._queue is None:
            self._queue = asyncio.Queue()

    async def publish(self, event: AgentInvocationEvent) -> None:
        await self.publish_raw(encode_event(event))

    async def publish_raw(self, body: str) -> DeliveryHandle:
        """Enqueue a raw body as-is; used to simulate foreign producers."""
        if self._queue is None:
            raise NotInitializedError("In-memory broker not initialized")
        handle = str(next(self._sequence))
        await self._queue.put((handle, body))
        return handle

    async def subscribe(self, handler: EventHandler) -> None:
        queue = self._queue
        if queue is None:
            raise NotInitializedError("In-memory broker not initialized")
        await self._stop_consumer()
        self._handler = handler
        held, self._held = self._held, {}
        for handle, body in held.items():
            queue.put_nowait((handle, body))
        self._consumer = asyncio.create_task(self._consume(queue), name="relaybus-memory-consumer")

    async def acknowledge(self, handle: DeliveryHandle) -> None:
        self.pending.discard(handle)
        self.acknowledged.append(handle)

    async def reject(self, handle: DeliveryHandle, requeue: bool) -> None:
        if requeue:
            self.pending.add(handle)
        else:
            self.pending.discard(handle)

    async def health_check(self) -> bool:
        return self._queue is not None

    async def shutdown(self) -> None:
        await self._stop_consumer()
        self._queue = None
        self._handler = None

    async def drain(self) -> None:
        """Wait until every queued message has been processed."""
        if self._queue is not None:
            await self._queue.join()

    async def _stop_consumer(self) -> None:
        consumer, self._consumer = self._consumer, None
        if consumer is None:
            return
        # Taking the lock lets the message being handled finish first.
        async with self._processing:
            consumer.cancel()
            with suppress(asyncio.CancelledError):
                await consumer

    async def _consume(self, queue: asyncio.Queue[tuple[DeliveryHandle, str]]) -> None:
        while True:
            handle, body = await queue.get()
            try:
                async with self._processing:
                    await self._process(handle, body)
            except asyncio.CancelledError:
                self._held.setdefault(handle, body)
                self.pending.add(handle)
                raise
            finally:
                queue.task_done()

    async def _process(self, handle: DeliveryHandle, body: str) -> None:
        handler = self._handler
        if handler is None:
            self._held[handle] = body
            return
        self.pending.add(handle)
        try:
            event = decode_event(body)
        except DeserializationError as exc:
            logger.error("memory.parse_failed", extra={"extra": {"handle": handle, "error": str(exc)}})
            self._dead_letter(body, DeadLetterReason.PARSE_ERROR, exc)
            await self.reject(handle, requeue=False)
            return

        try:
            await handler(event)
        except RedeliverError:
            logger.info("memory.held", extra={"extra": {"handle": handle, "event_id": str(event.id)}})
            self._held[handle] = body
            await self.reject(handle, requeue=True)
            return
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "memory.handler_failed",
                extra={"extra": {"event_id": str(event.id), "error": str(exc)}},
            )
            self._dead_letter(body, DeadLetterReason.HANDLER_ERROR, exc)
            await self.reject(handle, requeue=False)
            return
        await self.acknowledge(handle)

    def _dead_letter(self, body: str, reason: DeadLetterReason, error: Exception) -> None:
        self.dead_letters.append(
            DeadLetterRecord(original_message=body, error_type=reason, error_message=str(error))
        )
