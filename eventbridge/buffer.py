"""
Rendezvous buffer pairing published entries with pending pull requests.

Two FIFO queues are kept: entries nobody has asked for yet, and requests
nobody has answered yet. Every publish or request first tries to match the
head of the opposite queue, so at most one of the two queues holds anything
at any time.

The buffer itself holds no lock. The owning bridge serializes every call.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any
from typing import Optional

from eventbridge.entry import Entry
from eventbridge.entry import IterationResult
from eventbridge.errors import UpstreamError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Waiter(object):
    """A consumer request that found no buffered entry."""

    future: "asyncio.Future[IterationResult]"
    """Settled exactly once with a result or a failure."""

    loop: asyncio.AbstractEventLoop
    """The loop the future belongs to."""


def running_loop() -> Optional[asyncio.AbstractEventLoop]:
    """The loop running in this thread, or None."""
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


def as_exception(entry: Entry) -> BaseException:
    """
    Returns the exception a pull raises for an error-channel entry. Payloads
    that are already exceptions are raised as they are, anything else is
    wrapped in an UpstreamError.
    """
    if isinstance(entry.payload, BaseException):
        return entry.payload
    return UpstreamError(entry.payload, entry.channel)


class RendezvousBuffer(object):
    """FIFO matching of entries against pending requests."""

    def __init__(
        self,
        done_channel: Optional[str],
        error_channel: Optional[str],
    ) -> None:
        self.done_channel = done_channel
        self.error_channel = error_channel

        self._events: deque[Entry] = deque()
        self._waiters: deque[Waiter] = deque()

    @property
    def pending_events(self) -> int:
        """Number of buffered entries not yet claimed by a pull."""
        return len(self._events)

    @property
    def pending_requests(self) -> int:
        """Number of pulls waiting for an entry."""
        return sum(1 for waiter in self._waiters if not waiter.future.done())

    def is_terminal(self, entry: Entry) -> bool:
        return self.done_channel is not None and entry.channel == self.done_channel

    def is_error(self, entry: Entry) -> bool:
        return self.error_channel is not None and entry.channel == self.error_channel

    def publish(self, entry: Entry) -> bool:
        """
        Hand an entry to the oldest waiting request, or buffer it.

        Args:
            entry (Entry): The observed notification.
        Returns:
            bool: True if a done entry was matched to a request, meaning the
                owner must drain.
        """
        while self._waiters:
            waiter = self._waiters.popleft()
            if waiter.future.done():
                # Cancelled by the consumer before anything reached it.
                continue
            if self._settle(waiter, entry):
                return self.is_terminal(entry)

        self._events.append(entry)
        return False

    def request(
        self, loop: asyncio.AbstractEventLoop
    ) -> tuple["asyncio.Future[IterationResult]", bool]:
        """
        Claim the oldest buffered entry, or queue a request for the next one.

        Args:
            loop (asyncio.AbstractEventLoop): The consumer's running loop.
        Returns:
            tuple[Future, bool]: The future the consumer awaits, and True if
                the claimed entry was a done entry.
        """
        future: "asyncio.Future[IterationResult]" = loop.create_future()
        waiter = Waiter(future=future, loop=loop)

        if self._events:
            entry = self._events.popleft()
            self._resolve(waiter, entry)
            return future, self.is_terminal(entry)

        self._waiters.append(waiter)
        return future, False

    def discard_waiter(self, future: "asyncio.Future[IterationResult]") -> None:
        """Forget a request whose future the consumer cancelled."""
        for waiter in self._waiters:
            if waiter.future is future:
                self._waiters.remove(waiter)
                return

    def flush(self) -> list[Entry]:
        """
        Resolve every waiting request with a terminal result and empty the
        entry queue.

        Returns:
            list[Entry]: The buffered entries that were discarded.
        """
        discarded = list(self._events)
        self._events.clear()

        waiters = list(self._waiters)
        self._waiters.clear()
        for waiter in waiters:
            if not waiter.future.done():
                self._settle(waiter, None)

        return discarded

    # -----Settlement----------------------------------------------------------

    def _settle(self, waiter: Waiter, entry: Optional[Entry]) -> bool:
        """
        Deliver to a waiter on its own loop. Returns False when the waiter's
        loop is closed and can no longer receive anything.
        """
        if running_loop() is waiter.loop:
            self._resolve(waiter, entry)
            return True

        try:
            waiter.loop.call_soon_threadsafe(self._resolve, waiter, entry)
        except RuntimeError:
            logger.warning(
                f"Dropping pending request: its event loop is closed "
                f"(entry channel: {entry.channel if entry else None})"
            )
            return False
        return True

    def _resolve(self, waiter: Waiter, entry: Optional[Entry]) -> None:
        """Settle a waiter's future. Runs on the waiter's loop."""
        future = waiter.future
        if future.done():
            # Only reachable for a pull made from a second loop and cancelled
            # while the hand-over was in flight.
            if entry is not None:
                logger.warning(
                    f"Dropping '{entry.channel}' entry: its pull was cancelled"
                )
            return

        if entry is None:
            future.set_result(IterationResult(value=None, terminal=True))
        elif self.is_error(entry):
            future.set_exception(as_exception(entry))
        else:
            future.set_result(
                IterationResult(value=entry, terminal=self.is_terminal(entry))
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "done_channel": self.done_channel,
            "error_channel": self.error_channel,
            "pending_events": [
                {"channel": entry.channel, "payload": repr(entry.payload)}
                for entry in self._events
            ],
            "pending_requests": self.pending_requests,
        }
