"""
Deferred delivery and cancellable timers for the data bus.

The registry never invokes callbacks while a registration or completion
call is still running. Every callback goes through a Dispatcher, which
runs it on a later turn, in submission order. Timers (cache expiry,
scheduled refetch) are created through the same object and must be
cancellable.
"""
import asyncio
import heapq
import itertools
import logging
import threading
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Optional

logger = logging.getLogger("databus.dispatch")


def _run_logged(fn: Callable[..., Any], *args: Any) -> None:
    """Run a user callback; a failing callback must not break delivery."""
    try:
        fn(*args)
    except Exception:
        logger.exception(f"Data bus callback {fn!r} raised")


class Dispatcher(ABC):
    """
    Abstract executor used by the registry.

    Implementations guarantee:
    - defer() never runs fn synchronously
    - deferred calls run in FIFO order
    - the handle returned by call_later() has a cancel() method that
      prevents the timer from firing
    """

    @abstractmethod
    def defer(self, fn: Callable[..., Any], *args: Any) -> None:
        """Run fn(*args) soon, but not now."""
        pass

    @abstractmethod
    def call_later(self, delay: float, fn: Callable[..., Any], *args: Any) -> Any:
        """
        Run fn(*args) after delay seconds.

        Returns:
            A handle with a cancel() method
        """
        pass

    def shutdown(self) -> None:
        """Release dispatcher resources."""
        pass

    def in_delivery_thread(self) -> bool:
        """True when called from the thread that runs deferred calls."""
        return False


class _TimerEntry:
    """Cancellable handle for a timer owned by _TimerThread."""

    def __init__(self, when: float, fn: Callable[..., Any], args: tuple):
        self.when = when
        self.fn = fn
        self.args = args
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class _TimerThread:
    """
    A single sleeping thread serving every pending timer of a dispatcher.

    Due entries are handed to submit(); nothing user-supplied runs on the
    timer thread itself.
    """

    COMPACT_EVERY = 256

    def __init__(self, submit: Callable[[_TimerEntry], None], name: str):
        self._submit = submit
        self._heap: list = []
        self._seq = itertools.count()
        self._cond = threading.Condition()
        self._stopped = False
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)
        self._thread.start()

    def schedule(self, delay: float, fn: Callable[..., Any], args: tuple) -> _TimerEntry:
        entry = _TimerEntry(time.monotonic() + delay, fn, args)
        with self._cond:
            seq = next(self._seq)
            if seq and seq % self.COMPACT_EVERY == 0:
                # Cancelled entries otherwise linger until their due time
                self._heap = [item for item in self._heap if not item[2].cancelled]
                heapq.heapify(self._heap)
            heapq.heappush(self._heap, (entry.when, seq, entry))
            self._cond.notify()
        return entry

    def stop(self) -> None:
        with self._cond:
            self._stopped = True
            self._heap.clear()
            self._cond.notify()

    def _run(self) -> None:
        with self._cond:
            while not self._stopped:
                if not self._heap:
                    self._cond.wait()
                    continue
                when, _, entry = self._heap[0]
                if entry.cancelled:
                    heapq.heappop(self._heap)
                    continue
                delay = when - time.monotonic()
                if delay > 0:
                    self._cond.wait(delay)
                    continue
                heapq.heappop(self._heap)
                self._submit(entry)


class ThreadDispatcher(Dispatcher):
    """
    Dispatcher backed by a single delivery thread and a single timer thread.

    One worker keeps deliveries strictly FIFO. Due timers are queued on the
    same worker, so timer targets (expiry, scheduled refetch) run there too
    and re-enter the registry through its lock.
    """

    def __init__(self, thread_name_prefix: str = "databus-deliver"):
        self._worker_ident: Optional[int] = None
        self._executor = ThreadPoolExecutor(
            max_workers=1,
            thread_name_prefix=thread_name_prefix,
            initializer=self._mark_worker,
        )
        self._timers = _TimerThread(self._fire, name=f"{thread_name_prefix}-timers")

    def _mark_worker(self) -> None:
        self._worker_ident = threading.get_ident()

    def _fire(self, entry: _TimerEntry) -> None:
        try:
            self._executor.submit(self._run_timer, entry)
        except RuntimeError:
            logger.debug("Timer fired after dispatcher shutdown, dropped")

    @staticmethod
    def _run_timer(entry: _TimerEntry) -> None:
        # Cancelled between becoming due and reaching the worker
        if not entry.cancelled:
            _run_logged(entry.fn, *entry.args)

    def defer(self, fn: Callable[..., Any], *args: Any) -> None:
        self._executor.submit(_run_logged, fn, *args)

    def call_later(self, delay: float, fn: Callable[..., Any], *args: Any) -> _TimerEntry:
        return self._timers.schedule(delay, fn, args)

    def in_delivery_thread(self) -> bool:
        return self._worker_ident is not None and threading.get_ident() == self._worker_ident

    def shutdown(self) -> None:
        self._timers.stop()
        self._executor.shutdown(wait=False)


class _ThreadsafeTimer:
    """Timer requested from outside the loop thread; armed on the loop."""

    def __init__(self):
        self._handle: Optional[asyncio.TimerHandle] = None
        self._cancelled = False
        self._lock = threading.Lock()

    def _arm(self, loop: asyncio.AbstractEventLoop, delay: float, fn, args) -> None:
        with self._lock:
            if self._cancelled:
                return
            self._handle = loop.call_later(delay, _run_logged, fn, *args)

    def cancel(self) -> None:
        with self._lock:
            self._cancelled = True
            if self._handle is not None:
                self._handle.cancel()

    def cancelled(self) -> bool:
        return self._cancelled


class AsyncioDispatcher(Dispatcher):
    """
    Dispatcher that delivers on an asyncio event loop.

    Deferred calls use call_soon_threadsafe, so they are safe to queue from
    timer or worker threads and keep FIFO order on the loop.
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        # Raises RuntimeError when constructed outside a running loop
        self._loop = loop or asyncio.get_running_loop()

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        return self._loop

    def _in_loop_thread(self) -> bool:
        try:
            return asyncio.get_running_loop() is self._loop
        except RuntimeError:
            return False

    def defer(self, fn: Callable[..., Any], *args: Any) -> None:
        self._loop.call_soon_threadsafe(_run_logged, fn, *args)

    def call_later(self, delay: float, fn: Callable[..., Any], *args: Any) -> Any:
        if self._in_loop_thread():
            return self._loop.call_later(delay, _run_logged, fn, *args)
        timer = _ThreadsafeTimer()
        self._loop.call_soon_threadsafe(timer._arm, self._loop, delay, fn, args)
        return timer

    def in_delivery_thread(self) -> bool:
        return self._in_loop_thread()
