"""
Key registry: request coalescing with optional result retention.

Only one fetch per key is in flight at a time. Everyone who registers
interest while it is pending gets the same (error, data) once the owner
completes it, and the result can be kept around for later callers.
"""
import itertools
import logging
import threading
import time
from typing import Any, Callable, Dict, Hashable, Optional

from .core import (
    Callback,
    DataBusError,
    FetchFunction,
    FetchResult,
    KeyRecord,
    NoRegisteredCallbacksError,
    RefetchConfig,
    RefetchState,
    ScheduleOwnershipError,
    noop_callback,
)
from .dispatch import Dispatcher, ThreadDispatcher
from .retention import FOREVER, RetentionKind, resolve_retention

logger = logging.getLogger("databus.registry")


class _Completion:
    """One-shot completion callback handed to a scheduled fetch function."""

    def __init__(self, registry: "KeyRegistry", key: Hashable):
        self._registry = registry
        self._key = key
        self._lock = threading.Lock()
        self.called = False

    def __call__(self, error: Any = None, data: Any = None) -> None:
        with self._lock:
            if self.called:
                raise NoRegisteredCallbacksError(self._key)
            self.called = True
        if self._registry.closed:
            logger.debug(f"Dropping scheduled result for {self._key!r}: registry shut down")
            return
        self._registry.complete_fetch(self._key, error, data, FOREVER)


class KeyRegistry:
    """
    Registry of per-key fetch/cache state.

    Pattern:
    - register_interest() returns False to the first caller, who owns the fetch
    - later callers return True and are queued (or served from cache)
    - the owner calls complete_fetch() exactly once with (error, data)
    - every queued callback then runs on the dispatcher, in order

    Usage:
        registry = KeyRegistry()
        if not registry.register_interest("file:a.txt", on_done):
            read_file_async("a.txt", lambda err, data: registry.complete_fetch(
                "file:a.txt", err, data, retention=60))
    """

    def __init__(
        self,
        dispatcher: Optional[Dispatcher] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the registry.

        Args:
            dispatcher: Executor for deferred callbacks and timers
                (a ThreadDispatcher when omitted)
            clock: Monotonic time source in seconds, used for expiration
        """
        self._records: Dict[Hashable, KeyRecord] = {}
        self._lock = threading.RLock()
        self._dispatcher = dispatcher or ThreadDispatcher()
        self._clock = clock
        self._closed = False
        # Refetch cycle numbers, unique across every record this registry creates
        self._cycles = itertools.count(1)

        # Stats tracking
        self._stats = {
            "hits": 0,
            "misses": 0,
            "coalesced": 0,
            "completions": 0,
            "expirations": 0,
            "refetches": 0,
        }

    @property
    def dispatcher(self) -> Dispatcher:
        return self._dispatcher

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------
    # Registration and completion
    # ------------------------------------------------------------------

    def register_interest(
        self,
        key: Hashable,
        callback: Callback,
        force_update: bool = False,
    ) -> bool:
        """
        Register a callback for the result of key.

        Args:
            key: Identifier of the fetch
            callback: Called later as callback(error, data)
            force_update: Ignore a cached result. Does not bypass an
                in-flight fetch: the caller still joins its waiters.

        Returns:
            True if the caller must NOT fetch (result cached or already
            on the way), False if the caller now owns the fetch and must
            call complete_fetch()
        """
        if not callable(callback):
            raise TypeError(f"callback must be callable, got {callback!r}")

        with self._lock:
            if not force_update:
                cached = self._live_result(key)
                if cached is not None:
                    logger.debug(f"Returning cached data for {key!r}")
                    self._stats["hits"] += 1
                    self._dispatcher.defer(callback, cached.error, cached.data)
                    return True

            record = self._records.get(key)
            if record is not None and record.in_flight:
                record.waiters.append(callback)
                self._stats["coalesced"] += 1
                logger.debug(
                    f"Coalescing interest in {key!r} "
                    f"(waiters: {len(record.waiters)})"
                )
                return True

            if record is None:
                record = KeyRecord()
                self._records[key] = record
            record.waiters = [callback]
            self._stats["misses"] += 1
            logger.debug(f"Queuing interest in {key!r}, caller owns the fetch")
            return False

    def complete_fetch(
        self,
        key: Hashable,
        error: Any,
        data: Any,
        retention: Optional[float] = None,
    ) -> None:
        """
        Deliver the result of a fetch to every waiter on key.

        Args:
            key: Identifier of the fetch
            error: Opaque error value, passed through untouched
            data: Opaque payload, passed through untouched
            retention: None to skip caching, seconds > 0 to cache with
                expiry, zero or negative to cache until replaced

        Raises:
            NoRegisteredCallbacksError: If nobody is waiting on key, which
                means the caller never owned the fetch or completed it twice
        """
        policy = resolve_retention(retention)

        with self._lock:
            record = self._records.get(key)
            if record is None or not record.in_flight:
                logger.error(f"complete_fetch without registered callbacks: {key!r}")
                raise NoRegisteredCallbacksError(key)

            waiters, record.waiters = record.waiters, []
            self._stats["completions"] += 1
            logger.debug(f"Completing fetch for {key!r} ({len(waiters)} waiters)")
            for callback in waiters:
                self._dispatcher.defer(callback, error, data)

            if record.refetch is not None:
                self._arm_refetch(key, record)

            # Replacing or dropping a result always retires its expiry timer
            record.clear_result()
            if not policy.caches:
                self._prune(key, record)
                return

            record.result = FetchResult(error, data)
            if policy.kind is RetentionKind.TIMED:
                expires_at = self._clock() + policy.seconds
                record.expires_at = expires_at
                record.expiry_timer = self._dispatcher.call_later(
                    policy.seconds, self._expire, key, expires_at,
                )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def size_of_waiters(self, key: Hashable) -> int:
        """Number of callbacks queued on key's in-flight fetch."""
        with self._lock:
            record = self._records.get(key)
            return len(record.waiters) if record is not None else 0

    def cached_data_for(self, key: Hashable) -> Optional[FetchResult]:
        """
        Live cached result for key, or None.

        A result found past its expiration time is cleared here, whether
        or not its timer has fired yet.
        """
        with self._lock:
            return self._live_result(key)

    def is_pending(self, key: Hashable) -> bool:
        """True if a caller can get an answer for key without fetching."""
        return self.cached_data_for(key) is not None or self.size_of_waiters(key) > 0

    # ------------------------------------------------------------------
    # Scheduled fetch
    # ------------------------------------------------------------------

    def schedule_fetch(
        self,
        key: Hashable,
        interval: float,
        fetch_fn: FetchFunction,
    ) -> bool:
        """
        Keep key's cached value refreshed every interval seconds.

        fetch_fn is called immediately as fetch_fn(done), and again one
        interval after each completion. It must call done(error, data)
        exactly once per call. Results are cached until replaced.

        Returns:
            False if a fetch for key is in flight (nothing changed),
            True once the first fetch has been started
        """
        if isinstance(interval, bool) or not isinstance(interval, (int, float)) or interval <= 0:
            raise ValueError(f"interval must be a positive number of seconds, got {interval!r}")
        if not callable(fetch_fn):
            raise TypeError(f"fetch_fn must be callable, got {fetch_fn!r}")

        with self._lock:
            if self.size_of_waiters(key) > 0:
                logger.debug(f"Cannot schedule {key!r}: fetch in flight")
                return False
            done = self._begin_scheduled_fetch(key, interval, fetch_fn)

        logger.info(f"Scheduled fetch for {key!r} every {interval}s")
        self._invoke_fetch(key, fetch_fn, done)
        return True

    def cancel_schedule_fetch(self, key: Hashable) -> bool:
        """
        Stop the scheduled fetch for key and drop its record.

        Returns:
            False if a fetch is in flight (try again after it completes),
            True otherwise, including when nothing was scheduled
        """
        with self._lock:
            record = self._records.get(key)
            if record is None:
                return True
            if record.in_flight:
                logger.debug(f"Cannot cancel schedule for {key!r}: fetch in flight")
                return False
            if record.refetch is None:
                return True
            record.cancel_refetch(next(self._cycles))
            record.clear_result()
            del self._records[key]
            logger.info(f"Cancelled scheduled fetch for {key!r}")
            return True

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def invalidate(self, key: Hashable) -> bool:
        """
        Drop the cached result for key. Waiters and schedules are kept.

        Returns:
            True if a result was found and removed
        """
        with self._lock:
            record = self._records.get(key)
            if record is None or record.result is None:
                return False
            record.clear_result()
            self._prune(key, record)
            logger.info(f"Invalidated cached result: {key!r}")
            return True

    def describe(self, key: Hashable) -> Dict[str, Any]:
        """Diagnostic view of key's record. Never exposes the payload."""
        with self._lock:
            cached = self._live_result(key)
            record = self._records.get(key)
            expires_in = None
            if cached is not None and record.expires_at is not None:
                expires_in = max(0.0, record.expires_at - self._clock())
            return {
                "waiters": len(record.waiters) if record else 0,
                "pending": cached is not None or bool(record and record.waiters),
                "cached": cached is not None,
                "expires_in": expires_in,
                "scheduled": bool(record and record.refetch is not None),
                "refetch_state": (record.refetch_state if record else RefetchState.IDLE).value,
            }

    def get_stats(self) -> Dict[str, Any]:
        """Get registry statistics."""
        with self._lock:
            records = list(self._records.values())
            return {
                "keys": len(records),
                "in_flight": sum(1 for r in records if r.in_flight),
                "cached": sum(1 for r in records if r.result is not None),
                "scheduled": sum(1 for r in records if r.refetch is not None),
                **self._stats,
            }

    def shutdown(self) -> None:
        """Cancel every timer, forget every record and stop the dispatcher."""
        with self._lock:
            self._closed = True
            for record in self._records.values():
                record.cancel_refetch(next(self._cycles))
                record.clear_result()
            count = len(self._records)
            self._records.clear()
        self._dispatcher.shutdown()
        logger.info(f"Registry shut down ({count} records dropped)")

    # ------------------------------------------------------------------
    # Internals (lock held unless stated otherwise)
    # ------------------------------------------------------------------

    def _live_result(self, key: Hashable) -> Optional[FetchResult]:
        record = self._records.get(key)
        if record is None or record.result is None:
            return None
        if record.is_expired(self._clock()):
            logger.debug(f"Cached result for {key!r} is stale, clearing")
            record.clear_result()
            self._stats["expirations"] += 1
            self._prune(key, record)
            return None
        return record.result

    def _prune(self, key: Hashable, record: KeyRecord) -> None:
        if record.is_empty and self._records.get(key) is record:
            del self._records[key]

    def _expire(self, key: Hashable, expires_at: float) -> None:
        """Expiry timer target; ignores timers for results since replaced."""
        with self._lock:
            record = self._records.get(key)
            if record is None or record.result is None or record.expires_at != expires_at:
                return
            record.expiry_timer = None
            record.clear_result()
            self._stats["expirations"] += 1
            self._prune(key, record)
            logger.debug(f"Expired cached result for {key!r}")

    def _arm_refetch(self, key: Hashable, record: KeyRecord) -> None:
        record.cancel_refetch(next(self._cycles))
        record.refetch_timer = self._dispatcher.call_later(
            record.refetch.interval, self._refetch_due, key, record.cycle,
        )
        record.refetch_state = RefetchState.ARMED

    def _begin_scheduled_fetch(
        self,
        key: Hashable,
        interval: float,
        fetch_fn: FetchFunction,
    ) -> _Completion:
        if self.register_interest(key, noop_callback, force_update=True):
            logger.error(f"schedule_fetch found a pending fetch for {key!r}")
            raise ScheduleOwnershipError(key)
        record = self._records[key]
        record.cancel_refetch(next(self._cycles))
        record.refetch = RefetchConfig(interval, fetch_fn)
        record.refetch_state = RefetchState.FETCHING
        return _Completion(self, key)

    def _refetch_due(self, key: Hashable, cycle: int) -> None:
        """Refetch timer target (runs without the lock held)."""
        with self._lock:
            record = self._records.get(key)
            if record is None or record.refetch is None or record.cycle != cycle:
                return
            record.refetch_timer = None
            record.refetch_state = RefetchState.IDLE
            if record.in_flight:
                # The running fetch re-arms the cycle when it completes
                logger.debug(f"Refetch for {key!r} skipped: fetch in flight")
                return
            config = record.refetch
            done = self._begin_scheduled_fetch(key, config.interval, config.fetch_fn)
            self._stats["refetches"] += 1

        logger.debug(f"Refetching {key!r}")
        self._invoke_fetch(key, config.fetch_fn, done)

    def _invoke_fetch(self, key: Hashable, fetch_fn: FetchFunction, done: _Completion) -> None:
        """Run a scheduled fetch function outside the lock."""
        try:
            fetch_fn(done)
        except Exception as e:
            if not done.called:
                # Any failure before completion ends the cycle with that error
                logger.warning(f"Scheduled fetch failed for {key!r}: {e}")
                done(e, None)
                return
            if isinstance(e, DataBusError):
                raise
            logger.warning(f"Scheduled fetch for {key!r} raised after completing: {e}")
