"""
Shared fixtures for the event bus tests.

Provides:
- An in-memory stand-in for a Redis server and its pub/sub connections
- Registries wired to that server
- Markers for tests that need a live Redis
"""

import asyncio
import inspect
from typing import Dict, List, Optional, Tuple

import pytest
import pytest_asyncio

from redis_eventbus.broker import Subscription
from redis_eventbus.exceptions import BrokerConnectionError, EventBusClosedError
from redis_eventbus.registry import EventBusRegistry


# ============================================================================
# Markers
# ============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "integration: mark test as needing a live Redis server"
    )


# ============================================================================
# In-memory broker
# ============================================================================

class FakeRedisServer:
    """Routes published messages to every open fake connection."""

    def __init__(self):
        self.connections: List["FakeBrokerConnection"] = []
        self.published: List[Tuple[str, str]] = []
        self.connect_calls = 0
        self.fail_connects = 0
        self.fail_subscribes = False
        self.opened: List["FakeBrokerConnection"] = []

    async def connect(self, options=None, label: str = "redis") -> "FakeBrokerConnection":
        self.connect_calls += 1
        await asyncio.sleep(0)
        if self.fail_connects:
            self.fail_connects -= 1
            raise BrokerConnectionError(f"Failed to connect {label} to Redis: refused")
        connection = FakeBrokerConnection(self, label, options)
        self.connections.append(connection)
        self.opened.append(connection)
        return connection

    def route(self, channel: str, message: str) -> None:
        self.published.append((channel, message))
        for connection in list(self.connections):
            connection.receive(channel, message)

    def messages_on(self, channel: str) -> List[str]:
        return [message for name, message in self.published if name == channel]


class FakeBrokerConnection:
    def __init__(self, server: FakeRedisServer, label: str, options=None):
        self.server = server
        self.label = label
        self.options = options
        self.is_open = True
        self.listeners: Dict[str, List[Subscription]] = {}
        self.unsubscribe_calls: List[Optional[str]] = []

    async def subscribe(self, channel, handler):
        if not self.is_open:
            raise EventBusClosedError(f"{self.label} is closed")
        if self.server.fail_subscribes:
            raise BrokerConnectionError(f"Redis {self.label}: subscribe to '{channel}' failed")
        subscription = Subscription(self, channel, handler)
        self.listeners.setdefault(channel, []).append(subscription)
        await asyncio.sleep(0)
        return subscription

    async def unsubscribe(self, channel=None, handler=None):
        self.unsubscribe_calls.append(channel)
        channels = list(self.listeners) if channel is None else [channel]
        for name in channels:
            for subscription in list(self.listeners.get(name, ())):
                if handler is None or subscription.handler is handler:
                    self._drop(subscription)

    async def discard(self, subscription):
        self._drop(subscription)

    def _drop(self, subscription):
        subscription.active = False
        listeners = self.listeners.get(subscription.channel, [])
        if subscription in listeners:
            listeners.remove(subscription)
        if not listeners:
            self.listeners.pop(subscription.channel, None)

    def listener_count(self, channel: str) -> int:
        return len(self.listeners.get(channel, ()))

    def publish(self, channel, message):
        if not self.is_open:
            raise EventBusClosedError(f"{self.label} is closed")
        asyncio.get_running_loop().call_soon(self.server.route, channel, message)

    def receive(self, channel, message):
        for subscription in list(self.listeners.get(channel, ())):
            if subscription.active:
                result = subscription.handler(message)
                if inspect.isawaitable(result):
                    asyncio.ensure_future(result)

    async def flush(self):
        await asyncio.sleep(0)

    async def disconnect(self):
        self.is_open = False
        if self in self.server.connections:
            self.server.connections.remove(self)


async def settle(rounds: int = 5) -> None:
    """Let queued deliveries (and replies to them) run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def redis_server():
    return FakeRedisServer()


@pytest_asyncio.fixture
async def registry(redis_server):
    registry = EventBusRegistry(connector=redis_server.connect)
    yield registry
    await registry.destroy_all()


@pytest_asyncio.fixture
async def peer_registry(redis_server):
    """A second registry on the same server, standing in for another process."""
    registry = EventBusRegistry(connector=redis_server.connect)
    yield registry
    await registry.destroy_all()
