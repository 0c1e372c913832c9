"""OpenTelemetry spans for agent invocation traffic.

Publish and process spans carry the OpenTelemetry messaging attributes
(``messaging.system``, ``messaging.operation``, ``messaging.message.id``)
plus the invocation routing fields. ``RELAYBUS_DISABLE_TRACING=1`` swaps in
a no-op tracer so nothing imports the SDK.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
import logging
import os
from typing import Any

from relaybus.contracts.events import AgentInvocationEvent

logger = logging.getLogger(__name__)

DISABLE_ENV = "RELAYBUS_DISABLE_TRACING"
DESTINATION = "agent-invocations"


class _NoOpSpan:
    def __enter__(self) -> _NoOpSpan:
        return self

    def __exit__(self, *exc: object) -> None:
        return None

    def set_attribute(self, key: str, value: Any) -> None:
        return None

    def record_exception(self, exception: BaseException) -> None:
        return None


class _NoOpTracer:
    def start_as_current_span(self, name: str) -> _NoOpSpan:
        return _NoOpSpan()


_NOOP_TRACER = _NoOpTracer()


def tracing_disabled() -> bool:
    return os.getenv(DISABLE_ENV) == "1"


def setup_tracing(service_name: str, exporter: Any | None = None) -> None:
    """Install a TracerProvider exporting spans to ``exporter`` (console by default)."""
    if tracing_disabled():
        logger.info("tracing.disabled", extra={"extra": {"service": service_name}})
        return
    from opentelemetry import trace
    from opentelemetry.sdk.resources import Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter

    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    provider.add_span_processor(BatchSpanProcessor(exporter or ConsoleSpanExporter()))
    trace.set_tracer_provider(provider)
    logger.info("tracing.configured", extra={"extra": {"service": service_name}})


def get_tracer(name: str) -> Any:
    if tracing_disabled():
        return _NOOP_TRACER
    from opentelemetry import trace

    return trace.get_tracer(name)


def event_attributes(event: AgentInvocationEvent) -> dict[str, str]:
    return {
        "messaging.message.id": str(event.id),
        "relaybus.channel": event.channel.value,
        "relaybus.agent_id": event.agent_id,
        "relaybus.organization_id": event.organization_id,
    }


@contextmanager
def messaging_span(
    tracer: Any, operation: str, system: str, event: AgentInvocationEvent
) -> Iterator[Any]:
    """Span for one ``publish`` or ``process`` of ``event`` on broker ``system``.

    Exceptions are recorded on the span and re-raised.
    """
    with tracer.start_as_current_span(f"{DESTINATION} {operation}") as span:
        span.set_attribute("messaging.system", system)
        span.set_attribute("messaging.operation", operation)
        span.set_attribute("messaging.destination.name", DESTINATION)
        for key, value in event_attributes(event).items():
            span.set_attribute(key, value)
        try:
            yield span
        except Exception as exc:
            span.record_exception(exc)
            raise
