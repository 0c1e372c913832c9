"""Broker manager: owns at most one active provider and its lifecycle."""

from __future__ import annotations

from collections.abc import Callable
import importlib
import logging
from typing import Any

from relaybus.broker.base import BrokerProvider, DeliveryHandle, EventHandler
from relaybus.broker.errors import NotInitializedError, UnknownBrokerTypeError
from relaybus.broker.lifecycle import BrokerLifecycle, BrokerState
from relaybus.config.settings import BrokerSettings, WorkerSettings
from relaybus.contracts.events import AgentInvocationEvent
from relaybus.contracts.types import BrokerType
from relaybus.observability.telemetry import get_tracer, messaging_span

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[BrokerType, BrokerSettings], BrokerProvider]

# Provider modules are imported only for the selected type so that unused
# client libraries never load.
PROVIDER_REGISTRY: dict[BrokerType, str] = {
    BrokerType.KAFKA: "relaybus.broker.kafka:KafkaBrokerProvider",
    BrokerType.RABBITMQ: "relaybus.broker.rabbitmq:RabbitMQBrokerProvider",
    BrokerType.REDIS: "relaybus.broker.redis_streams:RedisBrokerProvider",
    BrokerType.MEMORY: "relaybus.broker.memory:InMemoryBrokerProvider",
}

_INSTALL_HINTS: dict[BrokerType, str] = {
    BrokerType.KAFKA: "aiokafka",
    BrokerType.RABBITMQ: "aio-pika",
    BrokerType.REDIS: "redis",
}


def _provider_config(broker_type: BrokerType, settings: BrokerSettings) -> Any:
    if broker_type is BrokerType.KAFKA:
        return settings.kafka
    if broker_type is BrokerType.RABBITMQ:
        return settings.rabbitmq
    if broker_type is BrokerType.REDIS:
        return settings.redis
    return None


def load_provider(broker_type: BrokerType, settings: BrokerSettings) -> BrokerProvider:
    """Import and construct the provider registered for ``broker_type``."""
    target = PROVIDER_REGISTRY.get(broker_type)
    if target is None:
        raise UnknownBrokerTypeError(f"Unknown broker type: {broker_type}")
    module_name, class_name = target.split(":", 1)
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        hint = _INSTALL_HINTS.get(broker_type, "the broker client library")
        raise ImportError(f"Install '{hint}' to use the {broker_type.value} broker") from exc
    provider_cls = getattr(module, class_name)
    config = _provider_config(broker_type, settings)
    return provider_cls(config) if config is not None else provider_cls()


class BrokerManager:
    """Delegates publish/subscribe/ack/reject/health to the active provider.

    One instance per process, constructed explicitly and passed to the
    dispatcher and worker. When no broker type is configured the manager is
    disabled: ``acknowledge``/``reject`` are no-ops, ``health_check`` returns
    True, and ``publish``/``subscribe`` raise NotInitializedError.

    Usage::

        manager = BrokerManager(get_broker_settings())
        await manager.initialize()
        await manager.publish(event)
        await manager.shutdown()
    """

    def __init__(
        self,
        settings: BrokerSettings,
        provider_factory: ProviderFactory | None = None,
    ) -> None:
        self._settings = settings
        self._provider_factory = provider_factory or load_provider
        self._provider: BrokerProvider | None = None
        self._lifecycle = BrokerLifecycle()
        self._tracer = get_tracer("relaybus.broker")

    @property
    def is_enabled(self) -> bool:
        return self._settings.broker_type is not None

    @property
    def broker_type(self) -> BrokerType | None:
        return self._settings.broker_type

    @property
    def worker_settings(self) -> WorkerSettings:
        return self._settings.worker

    @property
    def state(self) -> BrokerState:
        return self._lifecycle.state

    @property
    def provider(self) -> BrokerProvider | None:
        return self._provider

    async def initialize(self) -> None:
        if self._lifecycle.state is not BrokerState.UNINITIALIZED:
            logger.warning(
                "broker.already_initialized",
                extra={"extra": {"state": self._lifecycle.state.value}},
            )
            return

        broker_type = self._settings.broker_type
        if broker_type is None:
            logger.info("broker.disabled", extra={"extra": {"mode": "sync"}})
            return

        logger.info("broker.initializing", extra={"extra": {"broker_type": broker_type.value}})
        self._lifecycle.trigger("begin_init")
        provider: BrokerProvider | None = None
        try:
            provider = self._provider_factory(broker_type, self._settings)
            await provider.initialize()
        except BaseException:
            if provider is not None:
                await self._discard(provider)
            self._lifecycle.trigger("init_failed")
            raise

        self._provider = provider
        self._lifecycle.trigger("init_succeeded")
        logger.info(
            "broker.initialized",
            extra={"extra": {"broker_type": broker_type.value, "provider": provider.name}},
        )

    async def publish(self, event: AgentInvocationEvent) -> None:
        provider = self._require_provider()
        with messaging_span(self._tracer, "publish", provider.name, event):
            await provider.publish(event)
        logger.info(
            "broker.published",
            extra={
                "extra": {
                    "event_id": str(event.id),
                    "channel": event.channel.value,
                    "agent_id": event.agent_id,
                }
            },
        )

    async def subscribe(self, handler: EventHandler) -> None:
        provider = self._require_provider()
        await provider.subscribe(handler)
        logger.info("broker.subscribed", extra={"extra": {"provider": provider.name}})

    async def acknowledge(self, handle: DeliveryHandle) -> None:
        if self._provider is None:
            return
        await self._provider.acknowledge(handle)

    async def reject(self, handle: DeliveryHandle, requeue: bool) -> None:
        if self._provider is None:
            return
        await self._provider.reject(handle, requeue)

    async def health_check(self) -> bool:
        if not self.is_enabled:
            return True
        if self._provider is None:
            return False
        return await self._provider.health_check()

    async def shutdown(self) -> None:
        if self._lifecycle.state is not BrokerState.READY or self._provider is None:
            return
        logger.info("broker.shutting_down", extra={"extra": {"provider": self._provider.name}})
        self._lifecycle.trigger("begin_shutdown")
        provider, self._provider = self._provider, None
        try:
            await provider.shutdown()
        finally:
            self._lifecycle.trigger("shutdown_done")
        logger.info("broker.shutdown_complete")

    def _require_provider(self) -> BrokerProvider:
        if self._provider is None or not self._lifecycle.is_ready:
            raise NotInitializedError(
                "Message broker not initialized. Call initialize() first or check is_enabled."
            )
        return self._provider

    @staticmethod
    async def _discard(provider: BrokerProvider) -> None:
        try:
            await provider.shutdown()
        except Exception:  # noqa: BLE001
            logger.exception("broker.discard_failed", extra={"extra": {"provider": provider.name}})
