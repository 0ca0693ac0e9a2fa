import asyncio
from typing import TYPE_CHECKING, Any, Optional

from redis_eventbus.broker import BrokerConnection, MessageHandler, Subscription
from redis_eventbus.channels import PING_EVENT, PONG_EVENT, is_reserved, qualify
from redis_eventbus.config import config
from redis_eventbus.exceptions import EventBusClosedError, ReservedEventNameError
from redis_eventbus.logger import logger
from redis_eventbus.payload import encode_payload

if TYPE_CHECKING:
    from redis_eventbus.registry import EventBusRegistry


class EventBus:
    """A named publish/subscribe domain on top of Redis.

    Every event ``E`` emitted or listened to on a bus maps to the Redis
    channel ``<channel_prefix>:E``, so buses with different names never see
    each other's traffic. Instances are created through
    :meth:`EventBusRegistry.create`, which hands over one publishing and one
    subscribing connection.

    The event names ``ping`` and ``pong`` belong to the liveness protocol
    (:meth:`ping`) and are rejected by :meth:`on` and :meth:`emit`.
    """

    def __init__(
        self,
        name: str,
        channel_prefix: str,
        publisher: BrokerConnection,
        subscriber: BrokerConnection,
        registry: Optional["EventBusRegistry"] = None,
    ):
        self._name = name
        self._channel_prefix = channel_prefix
        self._publisher = publisher
        self._subscriber = subscriber
        self._registry = registry
        self._destroyed = False

    async def init(self) -> None:
        """Answer pings from any bus sharing this namespace, including this one."""
        await self._on(PING_EVENT, self._answer_ping, internal=True)

    def _answer_ping(self, _payload: str) -> None:
        # A ping can still be delivered while destroy is closing the connections.
        if self._destroyed:
            return
        self._emit(PONG_EVENT, "", internal=True)

    @property
    def name(self) -> str:
        return self._name

    @property
    def channel_prefix(self) -> str:
        return self._channel_prefix

    @property
    def publisher(self) -> BrokerConnection:
        return self._publisher

    @property
    def subscriber(self) -> BrokerConnection:
        return self._subscriber

    @property
    def connected(self) -> bool:
        """True if both Redis connections are open"""
        return self._publisher.is_open and self._subscriber.is_open

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    def channel_for(self, event: str) -> str:
        return qualify(self._channel_prefix, event)

    def _ensure_alive(self) -> None:
        if self._destroyed:
            raise EventBusClosedError(f"EventBus {self._name} has been destroyed")

    async def on(self, event: str, callback: MessageHandler) -> Subscription:
        """Call ``callback`` with the raw text of every message emitted as ``event``.

        Returns after Redis confirmed the subscription. Registering the same
        event twice gives two independent deliveries per message. The
        returned handle detaches this one listener when cancelled.
        """
        return await self._on(event, callback, internal=False)

    async def _on(self, event: str, callback: MessageHandler, internal: bool = False) -> Subscription:
        if not internal and is_reserved(event):
            raise ReservedEventNameError(event, "registered")
        self._ensure_alive()

        channel = self.channel_for(event)
        subscription = await self._subscriber.subscribe(channel, callback)
        logger.debug(f"EventBus {self._name}: listening on '{channel}'")
        return subscription

    def emit(self, event: str, payload: Any) -> None:
        """Publish ``payload`` as ``event`` without waiting for delivery.

        Strings are sent verbatim, anything else as JSON.
        """
        self._emit(event, payload, internal=False)

    def _emit(self, event: str, payload: Any, internal: bool = False) -> None:
        if not internal and is_reserved(event):
            raise ReservedEventNameError(event, "emitted")
        self._ensure_alive()

        self._publisher.publish(self.channel_for(event), encode_payload(payload))

    async def flush(self) -> None:
        """Wait until everything emitted so far has been handed to Redis"""
        await self._publisher.flush()

    async def ping(
        self, timeout: Optional[float] = None, min_response_count: Optional[int] = None
    ) -> bool:
        """Check whether other buses are listening on this namespace.

        Broadcasts a ``ping`` and counts ``pong`` answers for ``timeout``
        milliseconds. This bus always answers its own ping, so the result is
        True once ``min_response_count + 1`` answers have arrived and False
        if the deadline passes first.
        """
        if timeout is None:
            timeout = config.liveness.timeout_ms
        if min_response_count is None:
            min_response_count = config.liveness.min_response_count

        required = min_response_count + 1
        responses = 0
        enough = asyncio.get_running_loop().create_future()

        def on_pong(_payload: str) -> None:
            nonlocal responses
            responses += 1
            if responses >= required and not enough.done():
                enough.set_result(None)

        subscription: Optional[Subscription] = None
        try:
            async with asyncio.timeout(timeout / 1000):
                subscription = await self._on(PONG_EVENT, on_pong, internal=True)
                self._emit(PING_EVENT, "", internal=True)
                await enough
        except TimeoutError:
            logger.debug(
                f"EventBus {self._name}: ping timed out with {responses}/{required} responses"
            )
            return False
        finally:
            if subscription is not None:
                await subscription.cancel()

        logger.debug(f"EventBus {self._name}: ping answered by {responses} buses")
        return True

    async def destroy(self) -> None:
        """Close both connections and drop this bus from its registry."""
        if self._destroyed:
            return
        self._destroyed = True
        try:
            await self._publisher.flush()
            await self._subscriber.unsubscribe()
            await self._subscriber.disconnect()
            await self._publisher.disconnect()
        finally:
            if self._registry is not None:
                self._registry.remove(self._name, self)
        logger.info(f"EventBus {self._name} destroyed")

    def __repr__(self) -> str:
        return f"<EventBus name={self._name!r} prefix={self._channel_prefix!r}>"
