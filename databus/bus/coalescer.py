"""
Blocking request coalescing on top of the key registry.

When multiple threads ask for the same key, only one of them runs the
fetch function and all of them share the result.
"""
import logging
import threading
from typing import Any, Callable, Dict, Hashable, Optional

from config.settings import settings

from .registry import KeyRegistry

logger = logging.getLogger("databus.coalescer")

_DEFAULT = object()


class FetchFailedError(Exception):
    """A fetch delivered an error value that is not an exception."""

    def __init__(self, key: Hashable, error: Any):
        super().__init__(f"Fetch for {key!r} failed: {error!r}")
        self.key = key
        self.error = error


class _Outcome:
    """Waiter callback that parks the result for a blocked thread."""

    def __init__(self):
        self.event = threading.Event()
        self.error: Any = None
        self.data: Any = None

    def __call__(self, error: Any, data: Any) -> None:
        self.error = error
        self.data = data
        self.event.set()


class RequestCoalescer:
    """
    Ensures concurrent callers for the same key share one fetch.

    Pattern:
    - First caller for a key registers as owner and runs fetch_fn
    - Later callers are queued on the registry and block on an Event
    - The owner completes the fetch; every caller receives the same result
    - With a retention, later callers are answered from the cache

    Usage:
        coalescer = RequestCoalescer(registry)
        body = coalescer.get_or_fetch(
            "url:https://example.com/feed",
            lambda: requests.get(url, timeout=10).text,
            retention=30,
        )

    Cached hits and the owner's own fetch return without waiting, so they
    also work from inside a delivered callback. Joining someone else's fetch
    from the delivery thread (or the delivering event loop) could never
    return, so that case raises RuntimeError.
    """

    def __init__(
        self,
        registry: Optional[KeyRegistry] = None,
        timeout: Optional[float] = None,
        default_retention: Any = _DEFAULT,
    ):
        """
        Initialize the coalescer.

        Args:
            registry: Registry to coalesce on (process-wide one when omitted)
            timeout: Max seconds to wait for a result
            default_retention: Retention used when get_or_fetch gets none
        """
        if registry is None:
            from .manager import get_registry
            registry = get_registry()
        self._registry = registry
        self._timeout = settings.coalesce_timeout if timeout is None else timeout
        if default_retention is _DEFAULT:
            default_retention = settings.default_retention_seconds
        self._default_retention = default_retention

    @property
    def registry(self) -> KeyRegistry:
        return self._registry

    def get_or_fetch(
        self,
        key: Hashable,
        fetch_fn: Callable[[], Any],
        retention: Any = _DEFAULT,
        force_update: bool = False,
    ) -> Any:
        """
        Either join an existing fetch or cached result, or run fetch_fn.

        Args:
            key: Unique key for this request
            fetch_fn: Function to call if this caller owns the fetch
            retention: Seconds to keep the result (see complete_fetch)
            force_update: Skip a cached result

        Returns:
            The fetched data (shared among all concurrent callers)

        Raises:
            TimeoutError: If the result does not arrive in time
            RuntimeError: If waiting would block the delivery thread
            FetchFailedError: If the fetch delivered a non-exception error
            Exception: An exception delivered as the error is re-raised
        """
        if retention is _DEFAULT:
            retention = self._default_retention

        if not force_update:
            cached = self._registry.cached_data_for(key)
            if cached is not None:
                logger.debug(f"Returning cached data for {key!r}")
                return self._unwrap(key, cached.error, cached.data)

        on_delivery_thread = self._registry.dispatcher.in_delivery_thread()
        if on_delivery_thread and self._registry.size_of_waiters(key) > 0:
            raise RuntimeError(
                f"get_or_fetch for {key!r} would block the thread that delivers its result"
            )

        outcome = _Outcome()
        if not self._registry.register_interest(key, outcome, force_update=force_update):
            error, data = None, None
            try:
                data = fetch_fn()
            except Exception as e:
                error = e
                logger.warning(f"Fetch failed for {key!r}: {e}")
            self._registry.complete_fetch(key, error, data, retention)
            # The owner already holds the result; no need to wait for delivery
            return self._unwrap(key, error, data)

        if on_delivery_thread:
            # Another thread took the key between the checks above
            raise RuntimeError(
                f"get_or_fetch for {key!r} would block the thread that delivers its result"
            )

        logger.debug(f"Waiting on coalesced request for {key!r}")
        if not outcome.event.wait(timeout=self._timeout):
            logger.error(f"Timeout waiting for coalesced request: {key!r}")
            raise TimeoutError(f"Request for {key!r} timed out after {self._timeout}s")
        return self._unwrap(key, outcome.error, outcome.data)

    def get_stats(self) -> Dict[str, Any]:
        """Get coalescer statistics."""
        return {
            "timeout": self._timeout,
            "default_retention": self._default_retention,
            "registry": self._registry.get_stats(),
        }

    @staticmethod
    def _unwrap(key: Hashable, error: Any, data: Any) -> Any:
        if isinstance(error, Exception):
            raise error
        if error is not None:
            raise FetchFailedError(key, error)
        return data
