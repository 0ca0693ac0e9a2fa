class EventBusError(Exception):
    """Base exception for all event bus errors"""


class ReservedEventNameError(EventBusError, ValueError):
    """Raised when the public API is used with a reserved event name."""

    def __init__(self, event: str, action: str):
        self.event = event
        self.action = action
        super().__init__(f"Reserved event name {event} cannot be {action}")


class EventBusNotFoundError(EventBusError, KeyError):
    """Raised when no bus is registered under the requested name."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(name)

    def __str__(self) -> str:
        return f"EventBus {self.name} not found."


class BrokerConnectionError(EventBusError, ConnectionError):
    """Raised when a broker connection cannot be established"""


class EventBusClosedError(EventBusError):
    """Raised when a destroyed bus is used"""
