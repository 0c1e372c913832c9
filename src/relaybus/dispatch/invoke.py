"""Sync-vs-async invocation dispatch.

Callers hand over routing fields plus an inline fallback. When a broker is
enabled the event is published and the caller gets an ``AsyncInvokeResult``
(e.g. to answer 202 Accepted); when the broker is disabled or the publish
fails, the fallback runs inline and its value comes back in a
``SyncInvokeResult``. A broker outage therefore degrades to synchronous
processing instead of failing the caller.
"""

from __future__ import annotations

import inspect
import logging
from typing import TypeVar

from relaybus.broker.manager import BrokerManager
from relaybus.contracts.events import AgentInvocationEvent, EventMetadata, utcnow
from relaybus.contracts.invocation import (
    AsyncInvokeResult,
    InvokeOptions,
    InvokeResult,
    SyncInvokeResult,
)
from relaybus.observability.telemetry import get_tracer

logger = logging.getLogger(__name__)

T = TypeVar("T")


def build_event(options: InvokeOptions[T]) -> AgentInvocationEvent:
    """Create the event for ``options`` with a fresh id."""
    return AgentInvocationEvent(
        channel=options.channel,
        agent_id=options.agent_id,
        organization_id=options.organization_id,
        user_id=options.user_id,
        payload=options.payload,
        reply_context=options.reply_context,
        metadata=EventMetadata(
            received_at=options.received_at or utcnow(),
            source_ip=options.source_ip,
            user_agent=options.user_agent,
        ),
    )


async def _run_sync(options: InvokeOptions[T]) -> SyncInvokeResult[T]:
    value = options.sync_handler()
    if inspect.isawaitable(value):
        value = await value
    return SyncInvokeResult(result=value)


class InvocationDispatcher:
    """Public entry point for invoking an agent in either mode."""

    def __init__(self, manager: BrokerManager) -> None:
        self._manager = manager
        self._tracer = get_tracer("relaybus.dispatch")

    async def invoke(self, options: InvokeOptions[T]) -> InvokeResult[T]:
        with self._tracer.start_as_current_span("invoke_agent") as span:
            span.set_attribute("relaybus.channel", options.channel.value)
            span.set_attribute("relaybus.agent_id", options.agent_id)

            # Both modes reject malformed routing fields before anything runs.
            event = build_event(options)
            if not self._manager.is_enabled:
                logger.debug(
                    "invoke.sync_mode",
                    extra={"extra": {"channel": options.channel.value, "agent_id": options.agent_id}},
                )
                span.set_attribute("relaybus.mode", "sync")
                return await _run_sync(options)

            try:
                await self._manager.publish(event)
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "invoke.fallback_sync",
                    extra={
                        "extra": {
                            "event_id": str(event.id),
                            "error_type": type(exc).__name__,
                            "error": str(exc),
                        }
                    },
                )
                span.set_attribute("relaybus.mode", "sync_fallback")
                return await _run_sync(options)

            logger.info(
                "invoke.published",
                extra={
                    "extra": {
                        "event_id": str(event.id),
                        "channel": event.channel.value,
                        "agent_id": event.agent_id,
                    }
                },
            )
            span.set_attribute("relaybus.mode", "async")
            span.set_attribute("relaybus.event_id", str(event.id))
            return AsyncInvokeResult(event_id=event.id)


async def invoke_agent_async(manager: BrokerManager, options: InvokeOptions[T]) -> InvokeResult[T]:
    """Functional shortcut for ``InvocationDispatcher(manager).invoke(options)``."""
    return await InvocationDispatcher(manager).invoke(options)
