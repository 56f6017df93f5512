"""Exceptions raised by the event bridge."""

from typing import Any
from typing import Optional


class EventBridgeError(Exception):
    """Base class for event bridge errors."""


class UpstreamError(EventBridgeError):
    """
    Raised from a pull when the source fired on the error channel with a
    payload that is not itself an exception.
    """

    def __init__(self, payload: Any, channel: Optional[str] = None) -> None:
        super().__init__(payload)
        self.payload = payload
        self.channel = channel


class IterationAborted(EventBridgeError):
    """Raised from abort() when the given reason is not an exception."""

    def __init__(self, reason: Any) -> None:
        super().__init__(reason)
        self.reason = reason


class StateTransitionError(EventBridgeError):
    """Raised when a bridge is asked to move its state backwards."""
