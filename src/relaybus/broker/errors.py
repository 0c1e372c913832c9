"""Error taxonomy for the broker layer."""

from __future__ import annotations

from uuid import UUID


class BrokerError(Exception):
    """Base class for broker layer failures."""


class BrokerConnectionError(BrokerError):
    """The broker is unreachable or misconfigured."""


class PublishError(BrokerError):
    """The broker did not confirm a publish."""


class DeserializationError(BrokerError):
    """A delivered message does not match the event schema."""

    def __init__(self, message: str, raw: str = "") -> None:
        super().__init__(message)
        self.raw = raw


class HandlerError(BrokerError):
    """The business handler failed for a delivered event."""

    def __init__(self, message: str, event_id: UUID | None = None) -> None:
        super().__init__(message)
        self.event_id = event_id


class NotInitializedError(BrokerError):
    """publish/subscribe called while the manager has no ready provider."""


class UnknownBrokerTypeError(BrokerError, ValueError):
    """No provider is registered for the requested broker type."""


class RedeliverError(BrokerError):
    """The consumer is not accepting work; the delivery must stay redeliverable.

    Providers neither acknowledge nor dead-letter it: RabbitMQ requeues, Kafka
    seeks back, Redis leaves the entry pending.
    """
