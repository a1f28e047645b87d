"""Shared test fixtures and manual time/dispatch doubles."""

from __future__ import annotations

from collections import deque
from typing import Any, Callable

import pytest

from databus.bus import Dispatcher, KeyRegistry, ThreadDispatcher


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now


class ManualTimer:
    """Timer handle owned by ManualDispatcher."""

    def __init__(self, due: float, fn: Callable[..., Any], args: tuple) -> None:
        self.due = due
        self.fn = fn
        self.args = args
        self.cancelled = False
        self.fired = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualDispatcher(Dispatcher):
    """Dispatcher that only runs work when the test says so."""

    def __init__(self, clock: FakeClock) -> None:
        self.clock = clock
        self.queue: deque = deque()
        self.timers: list[ManualTimer] = []

    def defer(self, fn: Callable[..., Any], *args: Any) -> None:
        self.queue.append((fn, args))

    def call_later(self, delay: float, fn: Callable[..., Any], *args: Any) -> ManualTimer:
        timer = ManualTimer(self.clock.now + delay, fn, args)
        self.timers.append(timer)
        return timer

    def run_pending(self) -> int:
        """Run queued deferred calls, including ones queued while running."""
        ran = 0
        while self.queue:
            fn, args = self.queue.popleft()
            fn(*args)
            ran += 1
        return ran

    @property
    def active_timers(self) -> list[ManualTimer]:
        return [t for t in self.timers if not t.cancelled and not t.fired]

    def advance(self, seconds: float) -> None:
        """Move the clock forward, firing due timers in order."""
        target = self.clock.now + seconds
        while True:
            due = [t for t in self.active_timers if t.due <= target]
            if not due:
                break
            timer = min(due, key=lambda t: t.due)
            self.clock.now = max(self.clock.now, timer.due)
            timer.fired = True
            timer.fn(*timer.args)
            self.run_pending()
        self.clock.now = target
        self.run_pending()


class Recorder:
    """Callback that records every (error, data) it receives."""

    def __init__(self, name: str = "", log: list | None = None) -> None:
        self.name = name
        self.calls: list[tuple[Any, Any]] = []
        self._log = log

    def __call__(self, error: Any, data: Any) -> None:
        self.calls.append((error, data))
        if self._log is not None:
            self._log.append(self.name)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def dispatcher(clock: FakeClock) -> ManualDispatcher:
    return ManualDispatcher(clock)


@pytest.fixture
def registry(dispatcher: ManualDispatcher, clock: FakeClock) -> KeyRegistry:
    return KeyRegistry(dispatcher=dispatcher, clock=clock)


@pytest.fixture
def thread_registry():
    """Registry delivering on a real background thread."""
    registry = KeyRegistry(dispatcher=ThreadDispatcher())
    yield registry
    registry.shutdown()
