"""
Value types shared by the event bridge.

Defines the Entry dataclass that wraps one observed notification with the
channel it arrived on, the IterationResult handed back to consumers on each
pull, the BridgeState enum tracking the bridge lifecycle, and the
BridgeOptions dataclass holding the sentinel channel configuration. Also
defines the LISTENER type alias used throughout the package for type hints.
"""

import enum
from dataclasses import dataclass
from typing import Any
from typing import Callable
from typing import Optional

LISTENER = Callable[..., Any]
"""
The handler a notification source calls when a channel fires. Handlers
registered by the bridge accept a single optional payload argument.
"""

DEFAULT_DONE_CHANNEL = "done"
DEFAULT_ERROR_CHANNEL = "error"


@dataclass(frozen=True)
class Entry(object):
    """One notification observed on a watched channel."""

    channel: str
    """The channel name the notification was fired on."""

    payload: Any = None
    """Whatever the source fired with, if anything."""


@dataclass(frozen=True)
class IterationResult(object):
    """The outcome of a single pull."""

    value: Optional[Entry]
    """
    The matched entry. Terminal results produced by a drain carry no entry,
    or the empty done entry when returned from stop().
    """

    terminal: bool
    """True once the sequence has ended."""


class BridgeState(enum.Enum):
    """
    Lifecycle of a bridge. Transitions only ever move forward:
    IDLE -> ACTIVE -> DRAINED.
    """

    IDLE = 0
    ACTIVE = 1
    DRAINED = 2


@dataclass(frozen=True)
class BridgeOptions(object):
    """Sentinel channel and attach configuration for a bridge."""

    done_channel: Optional[str] = DEFAULT_DONE_CHANNEL
    """Channel whose firing ends the sequence. None disables it."""

    error_channel: Optional[str] = DEFAULT_ERROR_CHANNEL
    """Channel whose firing fails the pull that reaches it. None disables it."""

    eager_attach: bool = False
    """Attach listeners at construction instead of on the first pull."""
