"""Channel naming and reserved event names."""

BUS_NAMESPACE = "node-redis-eventbus:"

PING_EVENT = "ping"
PONG_EVENT = "pong"
RESERVED_EVENTS = frozenset({PING_EVENT, PONG_EVENT})


def bus_prefix(name: str, prefix: str = "") -> str:
    """Build the channel prefix for the bus called ``name``.

    ``prefix`` is concatenated as is, without a separator, so an external
    prefix of ``"app"`` yields ``"appnode-redis-eventbus:<name>"``.
    """
    return f"{prefix or ''}{BUS_NAMESPACE}{name}"


def qualify(prefix: str, event: str) -> str:
    """Return the broker channel for ``event`` under ``prefix``."""
    return f"{prefix}:{event}" if prefix else event


def is_reserved(event: str) -> bool:
    return event in RESERVED_EVENTS
