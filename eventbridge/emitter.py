"""
# In-Process Notification Source

A small channel-based event emitter the bridge can observe, plus the
NotificationSource protocol describing what the bridge needs from any source.

The bridge only ever calls add_listener() and remove_listener(), so any object
exposing those two methods can be bridged (pyee's EventEmitter, for instance).
EventEmitter is the batteries-included option: listeners are kept by weak
reference, ordered by priority, and may be sync or async.
"""

import asyncio
import inspect
import logging
import weakref
from dataclasses import dataclass
from typing import Any
from typing import Callable
from typing import Optional
from typing import Protocol
from typing import Union
from typing import runtime_checkable

from eventbridge.entry import LISTENER


logger = logging.getLogger(__name__)


@runtime_checkable
class NotificationSource(Protocol):
    """Anything the bridge can register channel listeners on."""

    def add_listener(self, channel: str, listener: LISTENER) -> Any: ...

    def remove_listener(self, channel: str, listener: LISTENER) -> Any: ...


@dataclass(frozen=True)
class Listener(object):
    """A registered listener with its priority."""

    weak_callback: Union[weakref.ref[Any], weakref.WeakMethod]
    """
    What gets called when the channel fires. Held weakly so the emitter does
    not keep listener owners alive.
    """

    priority: int
    """Higher numbers are called before lower numbers."""

    is_async: bool
    """If the callback is a coroutine function."""

    channel: str
    """The channel the listener is registered on."""

    @property
    def callback(self) -> Optional[LISTENER]:
        """Get the live callback, or None if collected."""
        return self.weak_callback()


def _make_weak_ref(
    callback: LISTENER,
    channel: str,
    on_collected_callback: Callable[[str], None],
) -> Union[weakref.ref[Any], weakref.WeakMethod]:
    """Create appropriate weak reference for any callback type."""

    def cleanup(_: Union[weakref.ref[Any], weakref.WeakMethod]) -> None:
        on_collected_callback(channel)

    if hasattr(callback, "__self__"):
        return weakref.WeakMethod(callback, cleanup)
    else:
        return weakref.ref(callback, cleanup)


class EventEmitter(object):
    """
    Fires named channels at registered listeners.

    Use emit() to call synchronous listeners immediately.
    Use emit_async() to also await asynchronous listeners.

    Listeners receive whatever positional arguments the channel is fired
    with, in priority order (ties keep registration order). An exception
    raised by a listener propagates out of emit() and the remaining
    listeners are not called.
    """

    def __init__(self) -> None:
        self._registry: dict[str, list[Listener]] = {}

    # -----Listener Management-------------------------------------------------

    def _on_listener_collected(self, channel: str) -> None:
        """Called when a listener is garbage collected."""
        if channel not in self._registry:
            return

        self._registry[channel] = [
            listener
            for listener in self._registry[channel]
            if listener.callback is not None
        ]
        self._cleanup_channel_if_empty(channel)
        logger.debug(f"Listener collected on channel '{channel}'")

    def add_listener(self, channel: str, callback: LISTENER, priority: int = 0) -> None:
        """
        Register a callback on a channel.

        Args:
            channel (str): The channel name.
            callback (Callable): Called when the channel fires. Can be sync or
                async.
            priority (int): Higher priorities are called first.
        """
        weak_callback = _make_weak_ref(
            callback=callback,
            channel=channel,
            on_collected_callback=self._on_listener_collected,
        )
        listener = Listener(
            weak_callback=weak_callback,
            priority=priority,
            is_async=inspect.iscoroutinefunction(callback),
            channel=channel,
        )
        self._registry.setdefault(channel, []).append(listener)

    def remove_listener(self, channel: str, callback: LISTENER) -> None:
        """
        Remove a callback from a channel. Unknown callbacks are ignored.

        Args:
            channel (str): The channel name.
            callback (Callable): Callback to remove.
        """
        if channel not in self._registry:
            return

        self._registry[channel] = [
            listener
            for listener in self._registry[channel]
            if listener.callback != callback
        ]
        self._cleanup_channel_if_empty(channel)

    def _cleanup_channel_if_empty(self, channel: str) -> None:
        if channel in self._registry and not self._registry[channel]:
            del self._registry[channel]

    def _sorted_listeners(self, channel: str) -> list[Listener]:
        return sorted(
            self._registry.get(channel, []), key=lambda l: l.priority, reverse=True
        )

    # -----Emitting------------------------------------------------------------

    def emit(self, channel: str, *args: Any) -> bool:
        """
        Fire a channel at its synchronous listeners.

        Async listeners are skipped entirely. Use emit_async() to call them.

        Args:
            channel (str): The channel to fire.
            *args (Any): Passed through to each listener.
        Returns:
            bool: True if the channel had any live listeners.
        """
        listeners = self._sorted_listeners(channel)
        delivered = False

        for listener in listeners:
            callback = listener.callback
            if callback is None:
                continue
            delivered = True

            if listener.is_async:
                continue

            callback(*args)

        return delivered

    async def emit_async(self, channel: str, *args: Any) -> bool:
        """
        Fire a channel at every listener, awaiting async ones in turn.

        Args:
            channel (str): The channel to fire.
            *args (Any): Passed through to each listener.
        Returns:
            bool: True if the channel had any live listeners.
        """
        listeners = self._sorted_listeners(channel)
        delivered = False

        for listener in listeners:
            callback = listener.callback
            if callback is None:
                continue
            delivered = True

            if listener.is_async:
                await callback(*args)
            else:
                callback(*args)

        return delivered

    def emit_threadsafe(
        self, loop: asyncio.AbstractEventLoop, channel: str, *args: Any
    ) -> None:
        """Schedule emit() on the given loop from any thread."""
        loop.call_soon_threadsafe(self.emit, channel, *args)

    # -----Introspection-------------------------------------------------------

    def channels(self) -> list[str]:
        """Get all channels with at least one listener."""
        return sorted(self._registry.keys())

    def listener_count(self, channel: str) -> int:
        """Number of listeners on a channel, including dead references."""
        return len(self._registry.get(channel, []))

    def live_listener_count(self, channel: str) -> int:
        """Number of listeners on a channel whose callback is still alive."""
        return sum(
            1
            for listener in self._registry.get(channel, [])
            if listener.callback is not None
        )

    def has_listener(self, channel: str, callback: LISTENER) -> bool:
        """Check if a specific callback is registered on a channel."""
        return any(
            listener.callback == callback
            for listener in self._registry.get(channel, [])
        )
