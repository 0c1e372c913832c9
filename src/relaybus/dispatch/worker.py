"""Agent worker that consumes invocation events from the broker."""

from __future__ import annotations

import asyncio
import logging
from typing import NoReturn

from relaybus.broker.errors import HandlerError, RedeliverError
from relaybus.broker.manager import BrokerManager
from relaybus.config.settings import WorkerSettings
from relaybus.contracts.events import AgentInvocationEvent
from relaybus.dispatch.replies import (
    AgentExecutor,
    AgentResponse,
    LoggingReplySender,
    ReplySender,
    route_reply,
)
from relaybus.observability.telemetry import get_tracer, messaging_span

logger = logging.getLogger(__name__)


class AgentWorker:
    """Runs the executor for each delivered event and routes the reply.

    Returning normally from ``process_event`` lets the provider acknowledge
    the delivery; raising HandlerError makes it reject and dead-letter it.
    Once stopped, deliveries are refused with RedeliverError so the broker
    keeps them for another consumer.
    Handlers must be idempotent: delivery is at-least-once.
    """

    def __init__(
        self,
        manager: BrokerManager,
        executor: AgentExecutor,
        replies: ReplySender | None = None,
        settings: WorkerSettings | None = None,
    ) -> None:
        self._manager = manager
        self._executor = executor
        self._replies = replies or LoggingReplySender()
        self._settings = settings or manager.worker_settings
        self._slots = asyncio.Semaphore(max(1, self._settings.concurrency))
        self._running = False
        self._active = 0
        self._tracer = get_tracer("relaybus.worker")
        self._system = manager.broker_type.value if manager.broker_type else "none"

    @property
    def running(self) -> bool:
        return self._running

    @property
    def processing_count(self) -> int:
        return self._active

    async def start(self) -> None:
        if not self._manager.is_enabled:
            logger.info("worker.not_started", extra={"extra": {"reason": "broker disabled"}})
            return
        if self._running:
            logger.warning("worker.already_running")
            return
        self._running = True
        logger.info(
            "worker.starting",
            extra={
                "extra": {
                    "concurrency": self._settings.concurrency,
                    "max_retries": self._settings.max_retries,
                }
            },
        )
        try:
            await self._manager.subscribe(self.process_event)
        except BaseException:
            self._running = False
            raise
        logger.info("worker.started")

    async def stop(self) -> None:
        if not self._running:
            return
        logger.info("worker.stopping")
        self._running = False
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._settings.shutdown_timeout_s
        while self._active > 0 and loop.time() < deadline:
            await asyncio.sleep(0.1)
        if self._active > 0:
            logger.warning(
                "worker.shutdown_timeout",
                extra={"extra": {"active_processing": self._active}},
            )
        logger.info("worker.stopped")

    async def process_event(self, event: AgentInvocationEvent) -> None:
        if not self._running:
            self._refuse(event)

        async with self._slots:
            if not self._running:
                self._refuse(event)
            self._active += 1
            try:
                with messaging_span(self._tracer, "process", self._system, event):
                    await self._handle(event)
            finally:
                self._active -= 1

    @staticmethod
    def _refuse(event: AgentInvocationEvent) -> NoReturn:
        logger.warning("worker.refused", extra={"extra": {"event_id": str(event.id)}})
        raise RedeliverError(f"Worker stopped; event {event.id} left for redelivery")

    async def _handle(self, event: AgentInvocationEvent) -> None:
        fields = {
            "event_id": str(event.id),
            "channel": event.channel.value,
            "agent_id": event.agent_id,
        }
        logger.info("worker.processing", extra={"extra": fields})
        try:
            response = await self._execute_with_retries(event)
            replied = await route_reply(self._replies, event, response)
        except Exception as exc:  # noqa: BLE001
            logger.exception("worker.failed", extra={"extra": {**fields, "error": str(exc)}})
            raise HandlerError(f"Processing failed for event {event.id}: {exc}", event.id) from exc
        logger.info(
            "worker.processed",
            extra={"extra": {**fields, "response_length": len(response.text), "replied": replied}},
        )

    async def _execute_with_retries(self, event: AgentInvocationEvent) -> AgentResponse:
        attempts = self._settings.max_retries + 1
        delay = self._settings.retry_delay_ms / 1000
        for attempt in range(1, attempts + 1):
            try:
                return await self._executor.execute(event)
            except Exception as exc:  # noqa: BLE001
                if attempt >= attempts:
                    raise
                logger.warning(
                    "worker.retrying",
                    extra={
                        "extra": {"event_id": str(event.id), "attempt": attempt, "error": str(exc)}
                    },
                )
                await asyncio.sleep(delay * 2 ** (attempt - 1))
        raise AssertionError("unreachable")
