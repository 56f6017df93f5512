"""
# Event Bridge

Adapts a push-based, multi-channel notification source into a pull-based,
ordered async sequence.

    >>> import eventbridge
    >>> source = eventbridge.EventEmitter()
    >>> bridge = eventbridge.EventBridge(source, ["chunk"])
    >>> async for entry in bridge:
    ...     ...

Any object exposing add_listener(channel, listener) and
remove_listener(channel, listener) can be used as the source. EventEmitter is
a small in-process implementation shipped for convenience.
"""

from eventbridge.buffer import RendezvousBuffer
from eventbridge.emitter import EventEmitter
from eventbridge.emitter import NotificationSource
from eventbridge.entry import DEFAULT_DONE_CHANNEL
from eventbridge.entry import DEFAULT_ERROR_CHANNEL
from eventbridge.entry import BridgeOptions
from eventbridge.entry import BridgeState
from eventbridge.entry import Entry
from eventbridge.entry import IterationResult
from eventbridge.errors import EventBridgeError
from eventbridge.errors import IterationAborted
from eventbridge.errors import StateTransitionError
from eventbridge.errors import UpstreamError
from eventbridge.iterator import EventBridge
from eventbridge.iterator import listen
from eventbridge.listeners import ListenerSet


version_major = 1
version_minor = 0
version_patch = 0
__version__ = f"{version_major}.{version_minor}.{version_patch}"

__all__ = [
    "BridgeOptions",
    "BridgeState",
    "DEFAULT_DONE_CHANNEL",
    "DEFAULT_ERROR_CHANNEL",
    "Entry",
    "EventBridge",
    "EventBridgeError",
    "EventEmitter",
    "IterationAborted",
    "IterationResult",
    "ListenerSet",
    "NotificationSource",
    "RendezvousBuffer",
    "StateTransitionError",
    "UpstreamError",
    "listen",
]
