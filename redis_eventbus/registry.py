"""Get-or-create registry of named event buses."""

import asyncio
import contextlib
from typing import Dict, List, Optional

from redis_eventbus import broker
from redis_eventbus.broker import ClientOptions, Connector
from redis_eventbus.bus import EventBus
from redis_eventbus.channels import bus_prefix
from redis_eventbus.config import config
from redis_eventbus.exceptions import EventBusNotFoundError
from redis_eventbus.logger import logger


class EventBusRegistry:
    """Holds at most one live :class:`EventBus` per name.

    Applications keep one registry at their composition root and pass it to
    whatever needs a bus. ``connector`` opens a broker connection from client
    options; it defaults to a Redis connection.
    """

    def __init__(self, connector: Optional[Connector] = None):
        self._connector = connector or broker.connect
        self._buses: Dict[str, EventBus] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    async def create(
        self,
        name: str,
        client_options: ClientOptions = None,
        prefix: Optional[str] = None,
    ) -> EventBus:
        """Return the bus called ``name``, creating it on first use.

        ``client_options`` and ``prefix`` only apply when the bus is created;
        they are ignored if it already exists. Raises
        :class:`~redis_eventbus.exceptions.BrokerConnectionError` when Redis
        cannot be reached.
        """
        existing = self._buses.get(name)
        if existing is not None:
            return existing

        async with self._name_lock(name):
            existing = self._buses.get(name)
            if existing is not None:
                return existing

            channel_prefix = bus_prefix(name, config.prefix if prefix is None else prefix)
            publisher, subscriber = await self._open_pair(name, client_options)

            bus = EventBus(name, channel_prefix, publisher, subscriber, registry=self)
            try:
                await bus.init()
            except BaseException:
                await asyncio.gather(
                    subscriber.disconnect(), publisher.disconnect(), return_exceptions=True
                )
                raise

            self._buses[name] = bus
            logger.info(f"EventBus {name} created on '{channel_prefix}'")
            return bus

    @contextlib.asynccontextmanager
    async def _name_lock(self, name: str):
        """Serialise creation per name; the lock is dropped once nobody holds or awaits it."""
        lock = self._locks.setdefault(name, asyncio.Lock())
        self._lock_users[name] = self._lock_users.get(name, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[name] -= 1
            if not self._lock_users[name]:
                del self._lock_users[name]
                del self._locks[name]

    async def _open_pair(self, name: str, client_options: ClientOptions):
        results = await asyncio.gather(
            self._connector(client_options, label=f"{name} publisher"),
            self._connector(client_options, label=f"{name} subscriber"),
            return_exceptions=True,
        )
        failures = [r for r in results if isinstance(r, BaseException)]
        if failures:
            for result in results:
                if not isinstance(result, BaseException):
                    await result.disconnect()
            logger.error(f"EventBus {name} could not connect: {failures[0]}")
            raise failures[0]
        return results

    def get_by_name(self, name: str) -> EventBus:
        bus = self._buses.get(name)
        if bus is None:
            raise EventBusNotFoundError(name)
        return bus

    def remove(self, name: str, bus: Optional[EventBus] = None) -> None:
        """Forget the bus called ``name``.

        With ``bus`` given, the entry is only removed while it still refers
        to that instance.
        """
        current = self._buses.get(name)
        if current is None or (bus is not None and current is not bus):
            return
        del self._buses[name]

    def names(self) -> List[str]:
        return list(self._buses)

    async def destroy_all(self) -> None:
        """Destroy every registered bus."""
        for bus in list(self._buses.values()):
            await bus.destroy()

    def __contains__(self, name: object) -> bool:
        return name in self._buses

    def __len__(self) -> int:
        return len(self._buses)
