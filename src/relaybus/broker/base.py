"""Provider interface shared by every message broker backend."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Protocol

from relaybus.contracts.events import AgentInvocationEvent

EventHandler = Callable[[AgentInvocationEvent], Awaitable[None]]
"""Business callback: return to acknowledge, raise RedeliverError to leave the
delivery redeliverable, raise anything else to dead-letter it."""

DeliveryHandle = str
"""Broker-specific delivery reference (offset, delivery tag, stream entry id)."""


class BrokerProvider(Protocol):
    """Adapter over one concrete broker client.

    Implementations own their connections exclusively. ``publish`` returns
    only once the broker confirmed durable receipt; ``subscribe`` starts a
    detached consumption loop and returns as soon as it is running.
    """

    name: str

    async def initialize(self) -> None:
        """Connect and declare the main and dead-letter destinations."""

    async def publish(self, event: AgentInvocationEvent) -> None:
        """Hand an event to the broker, raising PublishError if not confirmed."""

    async def subscribe(self, handler: EventHandler) -> None:
        """Register ``handler`` and start consuming."""

    async def acknowledge(self, handle: DeliveryHandle) -> None:
        """Mark one delivery as processed."""

    async def reject(self, handle: DeliveryHandle, requeue: bool) -> None:
        """Mark one delivery as failed, optionally asking for redelivery."""

    async def health_check(self) -> bool:
        """Return False instead of raising when the broker is unreachable."""

    async def shutdown(self) -> None:
        """Stop intake, wait for in-flight handlers, then release connections.

        Safe to call repeatedly or before initialize.
        """
