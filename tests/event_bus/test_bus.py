"""
Tests for EventBus registration and emission
Covers delivery, namespace isolation, reserved names and destruction
"""

import asyncio

import pytest

from redis_eventbus.exceptions import EventBusClosedError, ReservedEventNameError
from tests.conftest import settle


@pytest.mark.asyncio
async def test_single_message_single_event(registry):
    bus = await registry.create("myEventBus_test2")
    received = asyncio.get_running_loop().create_future()

    await bus.on("msg", received.set_result)
    bus.emit("msg", "Hello")

    assert await asyncio.wait_for(received, 1) == "Hello"


@pytest.mark.asyncio
async def test_events_are_published_on_namespaced_channel(registry, redis_server):
    bus = await registry.create("orders")

    bus.emit("created", "o-1")
    await settle()

    assert redis_server.messages_on("node-redis-eventbus:orders:created") == ["o-1"]


@pytest.mark.asyncio
async def test_external_prefix_is_part_of_channel(registry, redis_server):
    bus = await registry.create("orders", prefix="tenant1")

    bus.emit("created", "o-1")
    await settle()

    assert bus.channel_prefix == "tenant1node-redis-eventbus:orders"
    assert redis_server.messages_on("tenant1node-redis-eventbus:orders:created") == ["o-1"]


@pytest.mark.asyncio
async def test_structured_payload_arrives_as_json_text(registry):
    bus = await registry.create("structured")
    received = []

    await bus.on("order", received.append)
    bus.emit("order", {"id": 7, "items": ["a", "b"]})
    await settle()

    assert received == ['{"id":7,"items":["a","b"]}']


@pytest.mark.asyncio
async def test_multiple_messages_on_two_events(registry):
    bus = await registry.create("myEventBus_test3")
    hello, ask = [], []

    await bus.on("hello", hello.append)
    await bus.on("ask", ask.append)

    bus.emit("hello", "Hello")
    bus.emit("hello", "World")
    bus.emit("ask", "How")
    bus.emit("ask", "are")
    bus.emit("ask", "you?")
    await settle()

    assert hello == ["Hello", "World"]
    assert ask == ["How", "are", "you?"]


@pytest.mark.asyncio
async def test_two_listeners_on_same_event_each_get_every_message(registry):
    bus = await registry.create("dup")
    first, second = [], []

    await bus.on("ask", first.append)
    await bus.on("ask", second.append)
    for message in ("How", "are", "you?"):
        bus.emit("ask", message)
    await settle()

    assert first == ["How", "are", "you?"]
    assert second == ["How", "are", "you?"]


@pytest.mark.asyncio
async def test_same_callback_registered_twice_fires_twice(registry):
    bus = await registry.create("twice")
    received = []

    await bus.on("msg", received.append)
    await bus.on("msg", received.append)
    bus.emit("msg", "x")
    await settle()

    assert received == ["x", "x"]


@pytest.mark.asyncio
async def test_buses_with_different_names_are_isolated(registry):
    bus_a = await registry.create("myEventBus_testA")
    bus_b = await registry.create("myEventBus_testB")
    received_a, received_b = [], []

    await bus_a.on("msg", received_a.append)
    await bus_b.on("msg", received_b.append)
    bus_a.emit("msg", "Hello")
    bus_b.emit("msg", "World")
    await settle()

    assert received_a == ["Hello"]
    assert received_b == ["World"]


@pytest.mark.asyncio
async def test_coroutine_listeners_are_awaited(registry):
    bus = await registry.create("async-listener")
    received = asyncio.get_running_loop().create_future()

    async def on_msg(payload):
        await asyncio.sleep(0)
        received.set_result(payload)

    await bus.on("msg", on_msg)
    bus.emit("msg", "later")

    assert await asyncio.wait_for(received, 1) == "later"


@pytest.mark.asyncio
async def test_cancelled_subscription_stops_delivery(registry):
    bus = await registry.create("detach")
    kept, dropped = [], []

    await bus.on("msg", kept.append)
    subscription = await bus.on("msg", dropped.append)
    bus.emit("msg", "one")
    await settle()

    await subscription.cancel()
    await subscription.cancel()
    bus.emit("msg", "two")
    await settle()

    assert kept == ["one", "two"]
    assert dropped == ["one"]
    assert not subscription.active


@pytest.mark.asyncio
@pytest.mark.parametrize("event", ["ping", "pong"])
async def test_reserved_event_cannot_be_registered(registry, event):
    bus = await registry.create(f"reserved-on-{event}")

    with pytest.raises(ReservedEventNameError) as exc_info:
        await bus.on(event, lambda payload: None)

    assert str(exc_info.value) == f"Reserved event name {event} cannot be registered"


@pytest.mark.asyncio
@pytest.mark.parametrize("event", ["ping", "pong"])
async def test_reserved_event_cannot_be_emitted(registry, redis_server, event):
    bus = await registry.create(f"reserved-emit-{event}")

    with pytest.raises(ReservedEventNameError) as exc_info:
        bus.emit(event, "")

    assert str(exc_info.value) == f"Reserved event name {event} cannot be emitted"
    await settle()
    assert redis_server.published == []


@pytest.mark.asyncio
async def test_connected_reflects_both_connections(registry):
    bus = await registry.create("conn")
    assert bus.connected

    bus.subscriber.is_open = False
    assert not bus.connected


@pytest.mark.asyncio
async def test_bus_self_subscribes_to_ping(registry):
    bus = await registry.create("self-ping")

    assert bus.subscriber.listener_count("node-redis-eventbus:self-ping:ping") == 1


@pytest.mark.asyncio
async def test_ping_arriving_during_destroy_is_ignored(registry, redis_server):
    bus = await registry.create("closing")
    answer = bus.subscriber.listeners["node-redis-eventbus:closing:ping"][0].handler

    await bus.destroy()
    answer("")
    await settle()

    assert redis_server.messages_on("node-redis-eventbus:closing:pong") == []


@pytest.mark.asyncio
async def test_destroy_closes_connections_and_unregisters(registry):
    bus = await registry.create("myEventBus_test")
    publisher, subscriber = bus.publisher, bus.subscriber

    await bus.destroy()

    assert not publisher.is_open
    assert not subscriber.is_open
    assert not bus.connected
    assert bus.destroyed
    assert "myEventBus_test" not in registry
    assert subscriber.unsubscribe_calls == [None]


@pytest.mark.asyncio
async def test_destroy_delivers_pending_emits_first(registry, redis_server):
    bus = await registry.create("flush-on-destroy")

    bus.emit("msg", "last words")
    await bus.destroy()

    assert redis_server.messages_on("node-redis-eventbus:flush-on-destroy:msg") == ["last words"]


@pytest.mark.asyncio
async def test_destroyed_bus_rejects_use(registry):
    bus = await registry.create("gone")
    await bus.destroy()
    await bus.destroy()

    with pytest.raises(EventBusClosedError):
        bus.emit("msg", "x")
    with pytest.raises(EventBusClosedError):
        await bus.on("msg", lambda payload: None)
