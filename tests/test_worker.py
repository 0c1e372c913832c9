"""Tests for the agent worker running on the in-memory broker."""

from __future__ import annotations

import pytest

from relaybus.broker.errors import HandlerError, RedeliverError
from relaybus.broker.manager import BrokerManager
from relaybus.broker.memory import InMemoryBrokerProvider
from relaybus.config.settings import BrokerSettings, WorkerSettings
from relaybus.contracts.types import AgentInvocationChannel, BrokerType, DeadLetterReason
from relaybus.dispatch.replies import AgentResponse, LoggingReplySender, route_reply
from relaybus.dispatch.worker import AgentWorker


class FakeExecutor:
    def __init__(self, failures: int = 0) -> None:
        self.failures = failures
        self.calls = 0

    async def execute(self, event):
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError(f"attempt {self.calls} failed")
        return AgentResponse(text=f"re: {event.payload.message}", message_id="resp-1")


class RecordingReplies:
    def __init__(self) -> None:
        self.email: list[tuple] = []
        self.chatops: list[tuple] = []

    async def send_email_reply(self, context, agent_id, text) -> None:
        self.email.append((context.email_id, agent_id, text))

    async def send_chatops_reply(self, context, agent_id, text) -> None:
        self.chatops.append((context.channel_id, agent_id, text))


def _settings(**worker) -> BrokerSettings:
    worker.setdefault("retry_delay_ms", 0)
    return BrokerSettings(broker_type=BrokerType.MEMORY, worker=WorkerSettings(**worker))


async def _running_worker(executor, replies, **worker):
    manager = BrokerManager(_settings(**worker))
    await manager.initialize()
    agent_worker = AgentWorker(manager, executor, replies)
    await agent_worker.start()
    return manager, agent_worker


@pytest.mark.asyncio
async def test_routes_email_and_chatops_replies(make_event, email_context, chatops_context) -> None:
    replies = RecordingReplies()
    manager, worker = await _running_worker(FakeExecutor(), replies)

    await manager.publish(
        make_event(
            agent_id="mailer",
            message="hi",
            channel=AgentInvocationChannel.EMAIL,
            reply_context=email_context,
        )
    )
    await manager.publish(make_event(agent_id="bot", message="yo", reply_context=chatops_context))
    provider = manager.provider
    assert isinstance(provider, InMemoryBrokerProvider)
    await provider.drain()

    assert replies.email == [("AAMkAGI2", "mailer", "re: hi")]
    assert replies.chatops == [("19:general", "bot", "re: yo")]
    assert provider.acknowledged == ["1", "2"]
    assert provider.dead_letters == []

    await worker.stop()
    await manager.shutdown()


@pytest.mark.asyncio
async def test_retries_transient_executor_failures(make_event) -> None:
    executor = FakeExecutor(failures=2)
    worker = AgentWorker(BrokerManager(_settings(max_retries=3)), executor, RecordingReplies())
    worker._running = True

    await worker.process_event(make_event())

    assert executor.calls == 3
    assert worker.processing_count == 0


@pytest.mark.asyncio
async def test_exhausted_retries_raise_handler_error(make_event) -> None:
    executor = FakeExecutor(failures=10)
    worker = AgentWorker(BrokerManager(_settings(max_retries=2)), executor, RecordingReplies())
    worker._running = True
    event = make_event()

    with pytest.raises(HandlerError) as excinfo:
        await worker.process_event(event)

    assert executor.calls == 3
    assert excinfo.value.event_id == event.id


@pytest.mark.asyncio
async def test_failed_event_is_dead_lettered_by_provider(make_event) -> None:
    manager, worker = await _running_worker(FakeExecutor(failures=10), RecordingReplies(), max_retries=0)

    await manager.publish(make_event())
    provider = manager.provider
    assert isinstance(provider, InMemoryBrokerProvider)
    await provider.drain()

    (record,) = provider.dead_letters
    assert record.error_type is DeadLetterReason.HANDLER_ERROR
    assert provider.acknowledged == []

    await worker.stop()
    await manager.shutdown()


@pytest.mark.asyncio
async def test_disabled_broker_does_not_start_worker() -> None:
    worker = AgentWorker(BrokerManager(BrokerSettings()), FakeExecutor())
    await worker.start()
    assert worker.running is False


@pytest.mark.asyncio
async def test_start_twice_subscribes_once() -> None:
    manager = BrokerManager(_settings())
    await manager.initialize()
    worker = AgentWorker(manager, FakeExecutor())
    subscriptions = []
    original = manager.subscribe

    async def counting_subscribe(handler):
        subscriptions.append(handler)
        await original(handler)

    manager.subscribe = counting_subscribe
    await worker.start()
    await worker.start()

    assert len(subscriptions) == 1
    assert worker.running
    await worker.stop()
    await manager.shutdown()


@pytest.mark.asyncio
async def test_stopped_worker_refuses_events_for_redelivery(make_event) -> None:
    executor = FakeExecutor()
    worker = AgentWorker(BrokerManager(_settings()), executor)

    with pytest.raises(RedeliverError):
        await worker.process_event(make_event())

    assert executor.calls == 0


@pytest.mark.asyncio
async def test_event_delivered_after_stop_waits_for_next_worker(make_event) -> None:
    executor = FakeExecutor()
    manager, worker = await _running_worker(executor, RecordingReplies())
    provider = manager.provider
    assert isinstance(provider, InMemoryBrokerProvider)

    await worker.stop()
    await manager.publish(make_event(message="late"))
    await provider.drain()

    assert executor.calls == 0
    assert provider.pending == {"1"}
    assert provider.acknowledged == []
    assert provider.dead_letters == []

    await worker.start()
    await provider.drain()

    assert executor.calls == 1
    assert provider.acknowledged == ["1"]
    assert provider.pending == set()
    await worker.stop()
    await manager.shutdown()


@pytest.mark.asyncio
async def test_route_reply_without_context_returns_false(make_event, email_context) -> None:
    response = AgentResponse(text="ok", message_id="m-1")
    assert await route_reply(LoggingReplySender(), make_event(), response) is False
    assert await route_reply(
        LoggingReplySender(), make_event(reply_context=email_context), response
    ) is True
