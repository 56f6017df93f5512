"""
# Event Bridge

Turns a push-based notification source into a pull-based async sequence.

The source fires channels whenever it likes. The consumer pulls one entry at a
time, either with pull() or with `async for`. Entries are delivered in global
arrival order across all watched channels. Two sentinel channels get special
treatment: firing the done channel ends the sequence, firing the error channel
fails the pull that reaches it.

Example:
    >>> bridge = EventBridge(emitter, ["chunk"])
    >>> async for entry in bridge:
    ...     print(entry.channel, entry.payload)

All queue and state mutation happens under a single re-entrant lock, and
notifications fired off the consumer's loop are matched on that loop, so
sources may fire from other threads without reordering entries.
"""

import asyncio
import logging
import threading
from types import TracebackType
from typing import Any
from typing import Iterable
from typing import Optional

from eventbridge import emitter
from eventbridge.buffer import RendezvousBuffer
from eventbridge.buffer import running_loop
from eventbridge.entry import DEFAULT_DONE_CHANNEL
from eventbridge.entry import DEFAULT_ERROR_CHANNEL
from eventbridge.entry import BridgeOptions
from eventbridge.entry import BridgeState
from eventbridge.entry import Entry
from eventbridge.entry import IterationResult
from eventbridge.errors import IterationAborted
from eventbridge.errors import StateTransitionError
from eventbridge.listeners import ListenerSet


logger = logging.getLogger(__name__)


class EventBridge(object):
    """
    Ordered, cancelable async iterator over the channels of a notification
    source.

    Listeners are attached lazily on the first pull unless eager_attach is
    set. Once drained, by the done channel, stop() or abort(), the bridge
    never touches the source again and every pull is terminal.
    """

    def __init__(
        self,
        source: emitter.NotificationSource,
        channels: Iterable[str],
        *,
        done_channel: Optional[str] = DEFAULT_DONE_CHANNEL,
        error_channel: Optional[str] = DEFAULT_ERROR_CHANNEL,
        eager_attach: bool = False,
    ) -> None:
        """
        Args:
            source (NotificationSource): The emitter to observe. Not owned.
            channels (Iterable[str]): Channel names to bridge.
            done_channel (Optional[str]): Channel that ends the sequence.
                None means the source can never end it.
            error_channel (Optional[str]): Channel surfaced as a failed pull.
                None disables error handling.
            eager_attach (bool): Attach listeners now instead of on the first
                pull.
        """
        self.options = BridgeOptions(
            done_channel=done_channel,
            error_channel=error_channel,
            eager_attach=eager_attach,
        )
        self.source = source

        self._lock = threading.RLock()
        self._state = BridgeState.IDLE
        self._discarded: tuple[Entry, ...] = ()
        # Loop of the consumer. Off-loop notifications are matched there.
        self._loop: Optional[asyncio.AbstractEventLoop] = None

        self._buffer = RendezvousBuffer(
            done_channel=done_channel,
            error_channel=error_channel,
        )
        self._listeners = ListenerSet(
            source=source,
            channels=channels,
            forward=self._on_notification,
            done_channel=done_channel,
            error_channel=error_channel,
        )

        if eager_attach:
            with self._lock:
                self._activate()

    @classmethod
    def from_options(
        cls,
        source: emitter.NotificationSource,
        channels: Iterable[str],
        options: BridgeOptions,
    ) -> "EventBridge":
        """Build a bridge from a BridgeOptions instance."""
        return cls(
            source,
            channels,
            done_channel=options.done_channel,
            error_channel=options.error_channel,
            eager_attach=options.eager_attach,
        )

    # -----Introspection-------------------------------------------------------

    @property
    def state(self) -> BridgeState:
        return self._state

    @property
    def listeners(self) -> ListenerSet:
        """The bridge's listener handles on the source."""
        return self._listeners

    @property
    def pending_events(self) -> int:
        """Entries buffered ahead of the consumer."""
        with self._lock:
            return self._buffer.pending_events

    @property
    def pending_requests(self) -> int:
        """Pulls waiting on the source."""
        with self._lock:
            return self._buffer.pending_requests

    @property
    def discarded(self) -> tuple[Entry, ...]:
        """Buffered entries thrown away when the bridge drained."""
        return self._discarded

    def to_dict(self) -> dict[str, Any]:
        """Snapshot of the bridge for debugging."""
        with self._lock:
            data = self._buffer.to_dict()
            data.update(
                {
                    "state": self._state.name,
                    "channels": list(self._listeners.channels),
                    "attached": self._listeners.attached,
                    "discarded": len(self._discarded),
                }
            )
        return data

    def __repr__(self) -> str:
        return (
            f"<{self.__class__.__name__} state={self._state.name} "
            f"channels={list(self._listeners.channels)}>"
        )

    # -----State Machine-------------------------------------------------------

    def _transition(self, new_state: BridgeState) -> None:
        if new_state.value < self._state.value:
            raise StateTransitionError(
                f"Cannot move bridge from {self._state.name} back to {new_state.name}"
            )
        if new_state is self._state:
            return

        logger.debug(f"Bridge state {self._state.name} -> {new_state.name}")
        self._state = new_state

    def _activate(self) -> None:
        """IDLE -> ACTIVE. Attaches listeners; a failed attach stays IDLE."""
        if self._state is not BridgeState.IDLE:
            return

        self._listeners.attach()
        self._transition(BridgeState.ACTIVE)

    def _drain(self) -> None:
        """
        Any state -> DRAINED. Detaches listeners, resolves every waiting pull
        as terminal and discards the buffered entries.

        Waiting pulls are released even when the source fails to remove a
        listener; that failure is re-raised afterwards.
        """
        if self._state is BridgeState.DRAINED:
            return

        self._transition(BridgeState.DRAINED)
        try:
            self._listeners.detach()
        finally:
            self._flush()

    def _drain_from_source(self) -> None:
        """_drain() for paths running inside the source's dispatch."""
        try:
            self._drain()
        except Exception:
            logger.error(
                "Failed to detach listeners after reaching the done channel",
                exc_info=True,
            )

    def _flush(self) -> None:
        discarded = self._buffer.flush()
        self._discarded += tuple(discarded)
        if discarded:
            errors = sum(1 for entry in discarded if self._buffer.is_error(entry))
            error_str = (
                f" ({errors} on error channel '{self.options.error_channel}')"
                if errors
                else ""
            )
            logger.warning(
                f"Bridge drained with {len(discarded)} buffered entries "
                f"discarded{error_str}"
            )

    def _terminal_result(self) -> IterationResult:
        channel = self.options.done_channel or DEFAULT_DONE_CHANNEL
        return IterationResult(value=Entry(channel=channel), terminal=True)

    # -----Source Side---------------------------------------------------------

    def _on_notification(self, channel: str, payload: Any) -> None:
        """Listener entry point. Never raises into the source."""
        entry = Entry(channel=channel, payload=payload)
        with self._lock:
            if self._state is not BridgeState.ACTIVE:
                # Fired from an emit that started before we detached.
                logger.debug(f"Ignoring '{channel}' notification after drain")
                return

            loop = self._loop
            if loop is not None and running_loop() is not loop:
                # Matching runs on the consumer's loop so that cancelled
                # pulls are seen before the next entry is handed out.
                try:
                    loop.call_soon_threadsafe(self._publish, entry)
                    return
                except RuntimeError:
                    logger.warning(
                        f"Consumer loop is closed, buffering '{channel}' notification"
                    )

            self._publish(entry)

    def _publish(self, entry: Entry) -> None:
        with self._lock:
            if self._state is not BridgeState.ACTIVE:
                # Scheduled from another thread before the bridge drained.
                self._discarded += (entry,)
                return

            if self._buffer.publish(entry):
                self._drain_from_source()

    def _forget_cancelled(self, future: "asyncio.Future[IterationResult]") -> None:
        if future.cancelled():
            with self._lock:
                self._buffer.discard_waiter(future)

    # -----Consumer Side-------------------------------------------------------

    async def pull(self) -> IterationResult:
        """
        Get the next entry, waiting for the source if nothing is buffered.

        Returns:
            IterationResult: terminal is True once the done channel has been
                reached or the bridge has been stopped.
        Raises:
            UpstreamError: The source fired the error channel with a
                non-exception payload. Exception payloads are raised as is.
        """
        loop = asyncio.get_running_loop()

        with self._lock:
            if self._state is BridgeState.DRAINED:
                return self._terminal_result()

            self._activate()
            if self._loop is None:
                self._loop = loop

            future, reached_done = self._buffer.request(loop)
            if reached_done:
                self._drain_from_source()
            elif not future.done():
                future.add_done_callback(self._forget_cancelled)

        return await future

    def close(self) -> None:
        """Synchronous stop(), usable outside of a running loop."""
        with self._lock:
            self._drain()

    async def stop(self) -> IterationResult:
        """
        End the sequence from the consumer side. Safe to call in any state and
        more than once.

        Returns:
            IterationResult: Always terminal.
        """
        self.close()
        return self._terminal_result()

    async def abort(self, err: Any) -> IterationResult:
        """
        Stop the bridge and fail this call with err.

        Pulls that are already waiting resolve as terminal, not with err.

        Raises:
            BaseException: err itself, or IterationAborted(err) when err is
                not an exception.
        """
        self.close()
        if isinstance(err, BaseException):
            raise err
        raise IterationAborted(err)

    # -----Async Iteration Protocol--------------------------------------------

    def __aiter__(self) -> "EventBridge":
        return self

    async def __anext__(self) -> Entry:
        result = await self.pull()
        if result.terminal:
            raise StopAsyncIteration
        return result.value

    async def aclose(self) -> None:
        await self.stop()

    async def athrow(
        self, typ: Any, val: Any = None, tb: Optional[TracebackType] = None
    ) -> IterationResult:
        """
        Same call shape as an async generator's athrow(). The exception is
        built from (typ, val, tb) and the bridge is aborted with it.
        """
        if isinstance(typ, BaseException):
            err = typ
        elif isinstance(typ, type) and issubclass(typ, BaseException):
            if isinstance(val, typ):
                err = val
            elif val is None:
                err = typ()
            else:
                err = typ(val)
        else:
            err = typ

        if tb is not None and isinstance(err, BaseException):
            err = err.with_traceback(tb)

        return await self.abort(err)

    async def __aenter__(self) -> "EventBridge":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()


def listen(
    source: emitter.NotificationSource, *channels: str, **options: Any
) -> EventBridge:
    """
    Shorthand for EventBridge(source, channels, **options).

    Example:
        >>> async for entry in listen(emitter, "chunk", done_channel="end"):
        ...     handle(entry.payload)
    """
    return EventBridge(source, channels, **options)
