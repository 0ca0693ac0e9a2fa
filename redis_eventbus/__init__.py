"""Named, isolated publish/subscribe buses over Redis."""

from redis_eventbus.broker import RedisBrokerConnection, Subscription, connect
from redis_eventbus.bus import EventBus
from redis_eventbus.channels import RESERVED_EVENTS, bus_prefix, is_reserved, qualify
from redis_eventbus.exceptions import (
    BrokerConnectionError,
    EventBusClosedError,
    EventBusError,
    EventBusNotFoundError,
    ReservedEventNameError,
)
from redis_eventbus.registry import EventBusRegistry

__all__ = [
    "EventBus",
    "EventBusRegistry",
    "RedisBrokerConnection",
    "Subscription",
    "connect",
    "RESERVED_EVENTS",
    "bus_prefix",
    "is_reserved",
    "qualify",
    "EventBusError",
    "ReservedEventNameError",
    "EventBusNotFoundError",
    "BrokerConnectionError",
    "EventBusClosedError",
]
