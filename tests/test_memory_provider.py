"""Tests for the in-process provider's dead-letter policy."""

from __future__ import annotations

import asyncio

import pytest

from relaybus.broker.errors import NotInitializedError, RedeliverError
from relaybus.broker.memory import InMemoryBrokerProvider
from relaybus.contracts.events import encode_event
from relaybus.contracts.types import DeadLetterReason


@pytest.mark.asyncio
async def test_publish_requires_initialize(make_event) -> None:
    provider = InMemoryBrokerProvider()
    assert await provider.health_check() is False
    with pytest.raises(NotInitializedError):
        await provider.publish(make_event())


@pytest.mark.asyncio
async def test_malformed_body_is_dead_lettered_and_consumer_continues(make_event) -> None:
    provider = InMemoryBrokerProvider()
    await provider.initialize()
    seen = []

    async def handler(event):
        seen.append(event.id)

    await provider.subscribe(handler)
    bad_handle = await provider.publish_raw("{not json")
    good = make_event()
    await provider.publish(good)
    await provider.drain()

    assert seen == [good.id]
    assert len(provider.dead_letters) == 1
    record = provider.dead_letters[0]
    assert record.error_type is DeadLetterReason.PARSE_ERROR
    assert record.original_message == "{not json"
    assert bad_handle not in provider.pending
    assert bad_handle not in provider.acknowledged
    await provider.shutdown()


@pytest.mark.asyncio
async def test_handler_failure_is_dead_lettered(make_event) -> None:
    provider = InMemoryBrokerProvider()
    await provider.initialize()

    async def handler(event):
        raise RuntimeError("executor exploded")

    await provider.subscribe(handler)
    event = make_event()
    await provider.publish(event)
    await provider.drain()

    (record,) = provider.dead_letters
    assert record.error_type is DeadLetterReason.HANDLER_ERROR
    assert record.error_message == "executor exploded"
    assert record.original_message == encode_event(event)
    assert provider.acknowledged == []
    await provider.shutdown()


@pytest.mark.asyncio
async def test_reject_with_requeue_keeps_handle_pending() -> None:
    provider = InMemoryBrokerProvider()
    await provider.reject("5", requeue=True)
    assert "5" in provider.pending
    await provider.reject("5", requeue=False)
    assert "5" not in provider.pending


@pytest.mark.asyncio
async def test_refused_delivery_is_held_for_next_subscriber(make_event) -> None:
    provider = InMemoryBrokerProvider()
    await provider.initialize()

    async def refusing(event):
        raise RedeliverError("not now")

    seen = []

    async def accepting(event):
        seen.append(event.id)

    await provider.subscribe(refusing)
    event = make_event()
    handle = await provider.publish_raw(encode_event(event))
    await provider.drain()

    assert provider.pending == {handle}
    assert provider.acknowledged == []
    assert provider.dead_letters == []

    await provider.subscribe(accepting)
    await provider.drain()

    assert seen == [event.id]
    assert provider.acknowledged == [handle]
    assert provider.pending == set()
    await provider.shutdown()


@pytest.mark.asyncio
async def test_resubscribe_waits_for_message_in_flight(make_event) -> None:
    provider = InMemoryBrokerProvider()
    await provider.initialize()
    started = asyncio.Event()
    release = asyncio.Event()

    async def slow(event):
        started.set()
        await release.wait()

    async def other(event):
        raise AssertionError("message was already handled")

    await provider.subscribe(slow)
    handle = await provider.publish_raw(encode_event(make_event()))
    await started.wait()

    resubscribe = asyncio.create_task(provider.subscribe(other))
    await asyncio.sleep(0.01)
    assert not resubscribe.done()

    release.set()
    await resubscribe
    await provider.drain()

    assert provider.acknowledged == [handle]
    await provider.shutdown()
