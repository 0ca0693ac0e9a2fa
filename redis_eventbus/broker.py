"""Redis publish/subscribe connections used by the event bus.

A :class:`RedisBrokerConnection` wraps one ``redis.asyncio`` client. The
bus owns two of them: one only publishes, the other only subscribes. The
subscribing side multiplexes any number of listeners per channel over a
single Redis ``SUBSCRIBE`` and runs one reader task that dispatches
deliveries to them.
"""

import asyncio
import contextlib
import inspect
from typing import (
    Any,
    Awaitable,
    Callable,
    Coroutine,
    Dict,
    List,
    Mapping,
    Optional,
    Protocol,
    Set,
    Union,
)

import redis.asyncio as redis
from redis.exceptions import RedisError

from redis_eventbus.config import RedisSettings, config
from redis_eventbus.exceptions import BrokerConnectionError, EventBusClosedError
from redis_eventbus.logger import logger

MessageHandler = Callable[[str], Union[None, Awaitable[None]]]
ClientOptions = Union[RedisSettings, Mapping[str, Any], None]

# Seconds the reader blocks on the socket before checking for shutdown.
READ_TIMEOUT = 1.0


class Subscription:
    """Handle for one listener registered on one channel."""

    def __init__(self, connection: "BrokerConnection", channel: str, handler: MessageHandler):
        self.connection = connection
        self.channel = channel
        self.handler = handler
        self.active = True

    async def cancel(self) -> None:
        """Stop delivering messages to this listener. Safe to call twice."""
        if not self.active:
            return
        await self.connection.discard(self)

    def __repr__(self) -> str:
        state = "active" if self.active else "cancelled"
        return f"<Subscription channel={self.channel!r} {state}>"


class BrokerConnection(Protocol):
    """What the bus needs from a broker connection."""

    @property
    def is_open(self) -> bool: ...

    async def subscribe(self, channel: str, handler: MessageHandler) -> Subscription: ...

    async def unsubscribe(
        self, channel: Optional[str] = None, handler: Optional[MessageHandler] = None
    ) -> None: ...

    async def discard(self, subscription: Subscription) -> None: ...

    def publish(self, channel: str, message: str) -> None: ...

    async def flush(self) -> None: ...

    async def disconnect(self) -> None: ...


Connector = Callable[..., Awaitable[BrokerConnection]]


def resolve_settings(options: ClientOptions = None) -> RedisSettings:
    """Normalise client options into :class:`RedisSettings`."""
    if options is None:
        return config.redis
    if isinstance(options, RedisSettings):
        return options
    return RedisSettings(**dict(options))


def build_client(settings: RedisSettings) -> redis.Redis:
    kwargs = settings.to_client_kwargs()
    # Every command shares one socket, so publishes leave in call order.
    kwargs["single_connection_client"] = True
    kwargs["decode_responses"] = True
    if settings.url:
        return redis.Redis.from_url(settings.url, **kwargs)
    return redis.Redis(**kwargs)


class RedisBrokerConnection:
    def __init__(self, client: redis.Redis, label: str = "redis"):
        self.label = label
        self._client = client
        self._pubsub: Optional[redis.client.PubSub] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._open = False

        self._subscriptions: Dict[str, List[Subscription]] = {}
        self._confirmations: Dict[str, asyncio.Future] = {}
        self._unconfirmed: Dict[str, int] = {}
        self._sending: Dict[str, asyncio.Task] = {}
        self._publish_tasks: Set[asyncio.Task] = set()
        self._listener_tasks: Set[asyncio.Task] = set()

    @classmethod
    async def connect(cls, options: ClientOptions = None, label: str = "redis") -> "RedisBrokerConnection":
        """Create a client from ``options`` and wait until Redis answers."""
        settings = resolve_settings(options)
        connection = cls(build_client(settings), label=label)
        await connection.open()
        return connection

    async def open(self) -> None:
        try:
            await self._client.ping()
        except (RedisError, OSError) as e:
            logger.error(f"Failed to connect {self.label} to Redis: {e}")
            await self._client.aclose()
            raise BrokerConnectionError(f"Failed to connect {self.label} to Redis: {e}") from e
        self._open = True
        logger.info(f"Redis {self.label} connection established")

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def channels(self) -> List[str]:
        """Channels that currently have at least one listener"""
        return list(self._subscriptions)

    def listener_count(self, channel: str) -> int:
        return len(self._subscriptions.get(channel, ()))

    def _ensure_open(self) -> None:
        if not self._open:
            raise EventBusClosedError(f"Redis {self.label} connection is closed")

    async def subscribe(self, channel: str, handler: MessageHandler) -> Subscription:
        """Register ``handler`` for ``channel``.

        Returns once Redis has confirmed the channel subscription, so a
        message published afterwards is guaranteed to reach the handler.
        Cancelling one caller while it waits leaves other callers waiting on
        the same channel unaffected.
        """
        self._ensure_open()
        subscription = Subscription(self, channel, handler)
        listeners = self._subscriptions.setdefault(channel, [])
        listeners.append(subscription)

        confirmed = self._confirmations.get(channel)
        sending = None
        if confirmed is None and len(listeners) == 1:
            confirmed = asyncio.get_running_loop().create_future()
            self._confirmations[channel] = confirmed
            self._unconfirmed[channel] = self._unconfirmed.get(channel, 0) + 1
            sending = asyncio.ensure_future(self._send_subscribe(channel, confirmed))
            self._sending[channel] = sending

        try:
            if sending is not None:
                await asyncio.shield(sending)
            if confirmed is not None:
                await asyncio.shield(confirmed)
        except BaseException:
            self._drop(subscription)
            if channel not in self._subscriptions:
                await self._unsubscribe_channels(channel)
            raise
        logger.debug(f"Listener added on '{channel}' ({len(listeners)} total)")
        return subscription

    async def _send_subscribe(self, channel: str, confirmed: asyncio.Future) -> None:
        try:
            if self._pubsub is None:
                self._pubsub = self._client.pubsub()
            await self._pubsub.subscribe(channel)
        except (RedisError, OSError) as e:
            logger.error(f"Redis {self.label}: subscribe to '{channel}' failed: {e}")
            remaining = self._unconfirmed.get(channel, 0) - 1
            if remaining > 0:
                self._unconfirmed[channel] = remaining
            else:
                self._unconfirmed.pop(channel, None)
            if self._confirmations.get(channel) is confirmed:
                del self._confirmations[channel]
            if not confirmed.done():
                confirmed.set_exception(BrokerConnectionError(str(e)))
            return
        finally:
            if self._sending.get(channel) is asyncio.current_task():
                del self._sending[channel]
        self._start_reader()

    async def unsubscribe(
        self, channel: Optional[str] = None, handler: Optional[MessageHandler] = None
    ) -> None:
        """Remove listeners.

        Without arguments every listener on every channel is removed. With
        ``channel`` only that channel is affected, and with ``handler`` only
        the listeners registered with that callable.
        """
        if channel is None:
            channels = list(self._subscriptions)
            for listeners in self._subscriptions.values():
                for subscription in listeners:
                    subscription.active = False
            self._subscriptions.clear()
            if channels:
                await self._unsubscribe_channels(*channels)
            return

        listeners = self._subscriptions.get(channel, [])
        for subscription in list(listeners):
            if handler is None or subscription.handler is handler:
                self._drop(subscription)
        if channel not in self._subscriptions:
            await self._unsubscribe_channels(channel)

    async def discard(self, subscription: Subscription) -> None:
        self._drop(subscription)
        if subscription.channel not in self._subscriptions:
            await self._unsubscribe_channels(subscription.channel)

    def _drop(self, subscription: Subscription) -> None:
        subscription.active = False
        listeners = self._subscriptions.get(subscription.channel)
        if not listeners:
            return
        with contextlib.suppress(ValueError):
            listeners.remove(subscription)
        if not listeners:
            del self._subscriptions[subscription.channel]

    async def _unsubscribe_channels(self, *channels: str) -> None:
        for channel in channels:
            # Nobody is left waiting; a later subscribe must send its own SUBSCRIBE.
            self._confirmations.pop(channel, None)
            sending = self._sending.get(channel)
            if sending is not None:
                await asyncio.shield(sending)
        if self._pubsub is None or not self._open:
            return
        await self._pubsub.unsubscribe(*channels)
        logger.debug(f"Unsubscribed from {', '.join(channels)}")

    def publish(self, channel: str, message: str) -> None:
        """Publish ``message`` without waiting for Redis to accept it."""
        self._ensure_open()
        self._track(
            self._client.publish(channel, message),
            self._publish_tasks,
            f"publish to '{channel}'",
        )

    async def flush(self) -> None:
        """Wait for every publish issued so far to complete."""
        while self._publish_tasks:
            await asyncio.gather(*list(self._publish_tasks), return_exceptions=True)

    def _track(self, coro: Coroutine[Any, Any, Any], tasks: Set[asyncio.Task], what: str) -> asyncio.Task:
        task = asyncio.create_task(coro)
        tasks.add(task)

        def _done(t: asyncio.Task) -> None:
            tasks.discard(t)
            if not t.cancelled() and t.exception() is not None:
                logger.opt(exception=t.exception()).error(f"Redis {self.label}: {what} failed")

        task.add_done_callback(_done)
        return task

    def _start_reader(self) -> None:
        if self._reader_task is None or self._reader_task.done():
            self._reader_task = asyncio.create_task(self._read_messages())

    async def _read_messages(self) -> None:
        pubsub = self._pubsub
        while self._open:
            try:
                message = await pubsub.get_message(timeout=READ_TIMEOUT)
            except (RedisError, OSError) as e:
                logger.error(f"Redis {self.label} connection lost: {e}")
                self._open = False
                self._fail_confirmations(BrokerConnectionError(str(e)))
                break
            if message is not None:
                self._dispatch(message)

    def _dispatch(self, message: Mapping[str, Any]) -> None:
        kind = message.get("type")
        channel = message.get("channel")
        if kind == "subscribe":
            # A SUBSCRIBE sent before an UNSUBSCRIBE of the same channel
            # replies first; only the reply to the latest one confirms.
            remaining = self._unconfirmed.get(channel, 0) - 1
            if remaining > 0:
                self._unconfirmed[channel] = remaining
                return
            self._unconfirmed.pop(channel, None)
            confirmed = self._confirmations.pop(channel, None)
            if confirmed is not None and not confirmed.done():
                confirmed.set_result(None)
            return
        if kind != "message":
            return

        data = message.get("data")
        for subscription in list(self._subscriptions.get(channel, ())):
            if not subscription.active:
                continue
            try:
                result = subscription.handler(data)
            except Exception:
                logger.exception(f"Listener on '{channel}' raised")
                continue
            if inspect.isawaitable(result):
                self._track(result, self._listener_tasks, f"listener on '{channel}'")

    def _fail_confirmations(self, error: Exception) -> None:
        for confirmed in self._confirmations.values():
            if not confirmed.done():
                confirmed.set_exception(error)
        self._confirmations.clear()
        self._unconfirmed.clear()

    async def disconnect(self) -> None:
        """Flush pending publishes and close the connection."""
        if not self._open and self._reader_task is None and self._pubsub is None:
            await self._client.aclose()
            return

        await self.flush()
        self._open = False
        self._fail_confirmations(EventBusClosedError(f"Redis {self.label} connection is closed"))

        if self._reader_task is not None:
            self._reader_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader_task
            self._reader_task = None

        for task in list(self._listener_tasks):
            task.cancel()

        if self._pubsub is not None:
            await self._pubsub.aclose()
            self._pubsub = None
        await self._client.aclose()
        logger.info(f"Redis {self.label} connection closed")


async def connect(options: ClientOptions = None, label: str = "redis") -> RedisBrokerConnection:
    return await RedisBrokerConnection.connect(options, label=label)
