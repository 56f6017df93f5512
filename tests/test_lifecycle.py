"""
Unit tests for listener attachment and detachment.

Tests cover:
- Lazy and eager attachment
- Exactly one handler per distinct channel, sentinels included
- Idempotent attach/detach
- Rollback when the source fails part-way through attaching
- Waiting pulls released when the source fails to detach
- Isolation from unrelated listeners and from other bridges
"""

import asyncio
import logging
from typing import Any
from typing import Callable

import pytest

from eventbridge import BridgeOptions
from eventbridge import BridgeState
from eventbridge import EventBridge
from eventbridge import EventEmitter
from eventbridge import IterationResult
from eventbridge import ListenerSet
from eventbridge import StateTransitionError


class RecordingSource(object):
    """Minimal source that records every registration call."""

    def __init__(self, fail_on: str = "") -> None:
        self.fail_on = fail_on
        self.listeners: dict[str, list[Callable]] = {}
        self.added: list[str] = []
        self.removed: list[str] = []

    def add_listener(self, channel: str, listener: Callable) -> None:
        if channel == self.fail_on:
            raise RuntimeError(f"cannot listen on {channel}")
        self.listeners.setdefault(channel, []).append(listener)
        self.added.append(channel)

    def remove_listener(self, channel: str, listener: Callable) -> None:
        self.listeners[channel].remove(listener)
        self.removed.append(channel)

    def fire(self, channel: str, *args: Any) -> None:
        for listener in list(self.listeners.get(channel, [])):
            listener(*args)


@pytest.mark.asyncio
async def test_lazy_attach_happens_on_first_pull() -> None:
    """Test that listeners are not attached until something pulls."""
    source = RecordingSource()
    bridge = EventBridge(source, ["chunk"])

    assert bridge.state is BridgeState.IDLE
    assert source.added == []

    # Nothing is listening yet, so this is never seen.
    source.fire("chunk", "missed")

    task = asyncio.create_task(bridge.pull())
    await asyncio.sleep(0)
    assert bridge.state is BridgeState.ACTIVE
    assert source.added == ["chunk", "done", "error"]

    source.fire("chunk", "seen")
    result = await task
    assert result.value.payload == "seen"
    assert bridge.pending_events == 0


def test_eager_attach_happens_at_construction() -> None:
    """Test that eager_attach registers handlers immediately."""
    source = RecordingSource()
    bridge = EventBridge(source, ["a", "b"], eager_attach=True)

    assert bridge.state is BridgeState.ACTIVE
    assert source.added == ["a", "b", "done", "error"]
    assert bridge.listeners.attach_count == 1


def test_duplicate_channels_register_one_handler_each() -> None:
    """Test that repeated names, including sentinels, collapse to one handler."""
    source = RecordingSource()
    bridge = EventBridge(
        source, ["a", "a", "done", "b", "error"], eager_attach=True
    )

    assert source.added == ["a", "done", "b", "error"]
    assert bridge.listeners.channels == ("a", "done", "b", "error")


def test_disabled_sentinels_are_not_listened_to() -> None:
    """Test that None for done/error channels registers no sentinel handlers."""
    source = RecordingSource()
    EventBridge(
        source, ["a"], done_channel=None, error_channel=None, eager_attach=True
    )

    assert source.added == ["a"]


def test_custom_sentinel_names() -> None:
    """Test that renamed sentinel channels are the ones listened to."""
    source = RecordingSource()
    options = BridgeOptions(done_channel="end", error_channel="fail", eager_attach=True)
    bridge = EventBridge.from_options(source, ["data"], options)

    assert source.added == ["data", "end", "fail"]
    assert bridge.options == options


def test_listener_set_attach_and_detach_are_idempotent() -> None:
    """Test that repeated attach/detach calls do not double-register."""
    source = RecordingSource()
    forwarded: list[tuple[str, Any]] = []
    listeners = ListenerSet(
        source, ["a"], lambda channel, payload: forwarded.append((channel, payload))
    )

    listeners.detach()
    assert source.removed == []

    listeners.attach()
    listeners.attach()
    assert source.added == ["a"]
    assert listeners.attached is True

    source.fire("a", 1)
    assert forwarded == [("a", 1)]

    listeners.detach()
    listeners.detach()
    assert source.removed == ["a"]
    assert listeners.attach_count == 1
    assert listeners.detach_count == 1
    assert source.listeners["a"] == []


def test_attach_failure_rolls_back_and_stays_idle() -> None:
    """Test that a failing add_listener leaves nothing registered."""
    source = RecordingSource(fail_on="done")

    with pytest.raises(RuntimeError, match="cannot listen on done"):
        EventBridge(source, ["a", "b"], eager_attach=True)

    assert source.added == ["a", "b"]
    assert source.removed == ["a", "b"]


@pytest.mark.asyncio
async def test_attach_failure_on_pull_propagates() -> None:
    """Test that a lazy attach failure surfaces from pull() and can be retried."""
    source = RecordingSource(fail_on="error")
    bridge = EventBridge(source, ["a"])

    with pytest.raises(RuntimeError):
        await bridge.pull()
    assert bridge.state is BridgeState.IDLE
    assert bridge.listeners.attached is False
    assert source.removed == ["a", "done"]

    source.fail_on = ""
    task = asyncio.create_task(bridge.pull())
    await asyncio.sleep(0)
    assert bridge.state is BridgeState.ACTIVE

    source.fire("a", 1)
    assert (await task).value.payload == 1


@pytest.mark.asyncio
async def test_drain_detaches_and_never_reattaches() -> None:
    """Test that a drained bridge leaves the source alone for good."""
    source = RecordingSource()
    bridge = EventBridge(source, ["a"], eager_attach=True)

    await bridge.stop()
    assert sorted(source.removed) == ["a", "done", "error"]

    for _ in range(3):
        result = await bridge.pull()
        assert result.terminal is True

    assert bridge.listeners.attach_count == 1
    assert bridge.listeners.detach_count == 1
    assert len(source.added) == 3


class RemoveFailingSource(RecordingSource):
    """Source whose remove_listener raises for one channel."""

    def __init__(self, fail_remove_on: str) -> None:
        super().__init__()
        self.fail_remove_on = fail_remove_on

    def remove_listener(self, channel: str, listener: Callable) -> None:
        if channel == self.fail_remove_on:
            raise RuntimeError(f"cannot stop listening on {channel}")
        super().remove_listener(channel, listener)


@pytest.mark.asyncio
async def test_failed_detach_on_stop_still_releases_pulls() -> None:
    """Test that stop() resolves waiting pulls before re-raising."""
    source = RemoveFailingSource("chunk")
    bridge = EventBridge(source, ["chunk"], eager_attach=True)

    task = asyncio.create_task(bridge.pull())
    await asyncio.sleep(0)

    with pytest.raises(RuntimeError, match="cannot stop listening on chunk"):
        await bridge.stop()

    result = await asyncio.wait_for(task, timeout=1)
    assert result.terminal is True
    assert bridge.state is BridgeState.DRAINED
    assert bridge.listeners.attached is False
    # The other channels are still removed.
    assert sorted(source.removed) == ["done", "error"]

    # Already drained, so nothing touches the source again.
    assert (await bridge.stop()).terminal is True
    assert bridge.listeners.detach_count == 1


@pytest.mark.asyncio
async def test_failed_detach_on_done_stays_out_of_the_source(caplog) -> None:
    """Test that a done fire returns normally when detaching fails."""
    source = RemoveFailingSource("done")
    bridge = EventBridge(source, ["chunk"], eager_attach=True)

    first = asyncio.create_task(bridge.pull())
    second = asyncio.create_task(bridge.pull())
    await asyncio.sleep(0)

    with caplog.at_level(logging.ERROR, logger="eventbridge"):
        source.fire("done")

    done, pending = await asyncio.wait({first, second}, timeout=1)
    assert pending == set()
    assert (await first).terminal is True
    assert (await first).value.channel == "done"
    assert (await second) == IterationResult(value=None, terminal=True)

    assert bridge.state is BridgeState.DRAINED
    assert "Failed to detach listeners" in caplog.text
    assert "cannot stop listening on done" in caplog.text


def test_unrelated_listeners_survive_drain() -> None:
    """Test that the bridge only removes its own handlers."""
    source = EventEmitter()
    seen: list[Any] = []

    def other_listener(payload: Any) -> None:
        seen.append(payload)

    source.add_listener("chunk", other_listener)
    bridge = EventBridge(source, ["chunk"], eager_attach=True)
    assert source.listener_count("chunk") == 2

    bridge.close()
    assert source.listener_count("chunk") == 1
    assert source.has_listener("chunk", other_listener)

    source.emit("chunk", "after")
    assert seen == ["after"]


@pytest.mark.asyncio
async def test_bridges_over_one_source_are_independent() -> None:
    """Test that two bridges each see every entry and drain separately."""
    source = EventEmitter()
    first = EventBridge(source, ["n"], eager_attach=True)
    second = EventBridge(source, ["n"], eager_attach=True)

    source.emit("n", 1)
    await first.stop()
    source.emit("n", 2)

    assert first.discarded[0].payload == 1
    assert (await second.pull()).value.payload == 1
    assert (await second.pull()).value.payload == 2
    assert second.state is BridgeState.ACTIVE


def test_state_never_moves_backwards() -> None:
    """Test that the bridge refuses to leave a later state for an earlier one."""
    bridge = EventBridge(EventEmitter(), ["a"], eager_attach=True)

    with pytest.raises(StateTransitionError):
        bridge._transition(BridgeState.IDLE)

    bridge.close()
    with pytest.raises(StateTransitionError):
        bridge._transition(BridgeState.ACTIVE)
