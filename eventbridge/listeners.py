"""
Listener lifecycle management for the event bridge.

A ListenerSet owns the handlers a bridge registers on its notification
source: one per distinct watched channel, plus the done and error sentinel
channels when those are enabled. Handlers are kept here with strong
references for as long as they are attached, so sources that only hold
listeners weakly (such as eventbridge.EventEmitter) keep delivering.
"""

import logging
from typing import Any
from typing import Callable
from typing import Iterable
from typing import Optional

from eventbridge import emitter
from eventbridge.entry import LISTENER


logger = logging.getLogger(__name__)


FORWARD = Callable[[str, Any], None]
"""Receives (channel, payload) for every notification a handler observes."""


class ListenerSet(object):
    """
    Attaches and detaches the bridge's handlers as a unit.

    attach() and detach() are both idempotent: attaching while attached and
    detaching while detached do nothing.
    """

    def __init__(
        self,
        source: emitter.NotificationSource,
        channels: Iterable[str],
        forward: FORWARD,
        done_channel: Optional[str] = None,
        error_channel: Optional[str] = None,
    ) -> None:
        names = list(channels)
        if done_channel is not None:
            names.append(done_channel)
        if error_channel is not None:
            names.append(error_channel)

        self._source = source
        self._forward = forward
        # Duplicates are redundant, keep first-seen order.
        self._channels: tuple[str, ...] = tuple(dict.fromkeys(names))
        self._handles: dict[str, LISTENER] = {}
        self._attached = False

        self.attach_count = 0
        self.detach_count = 0

    @property
    def channels(self) -> tuple[str, ...]:
        """Every channel a handler is (or would be) registered on."""
        return self._channels

    @property
    def attached(self) -> bool:
        return self._attached

    def _make_handler(self, channel: str) -> LISTENER:
        forward = self._forward

        def handler(*args: Any) -> None:
            # No argument means no payload, several are kept as a tuple.
            if len(args) == 1:
                forward(channel, args[0])
            else:
                forward(channel, args or None)

        handler.__qualname__ = f"ListenerSet.handler[{channel}]"
        return handler

    def attach(self) -> None:
        """
        Register one handler per channel on the source.

        Raises:
            Exception: Whatever the source raises from add_listener. Handlers
                registered before the failure are removed first.
        """
        if self._attached:
            return

        try:
            for channel in self._channels:
                handler = self._make_handler(channel)
                self._source.add_listener(channel, handler)
                self._handles[channel] = handler
        except Exception:
            logger.error(
                f"Failed to attach listeners, rolling back "
                f"{len(self._handles)} already registered",
                exc_info=True,
            )
            self._remove_handles()
            raise

        self._attached = True
        self.attach_count += 1
        logger.debug(f"Attached listeners: {list(self._channels)}")

    def detach(self) -> None:
        """
        Unregister every handler registered by the last attach().

        Raises:
            Exception: The first error the source raised from remove_listener.
                Every other handler is still removed and the set counts as
                detached.
        """
        if not self._attached:
            return

        try:
            self._remove_handles()
        finally:
            self._attached = False
            self.detach_count += 1
            logger.debug(f"Detached listeners: {list(self._channels)}")

    def _remove_handles(self) -> None:
        first_error: Optional[Exception] = None
        for channel, handler in list(self._handles.items()):
            try:
                self._source.remove_listener(channel, handler)
            except Exception as e:
                logger.error(
                    f"Failed to remove listener for '{channel}'", exc_info=True
                )
                if first_error is None:
                    first_error = e
            del self._handles[channel]

        if first_error is not None:
            raise first_error
