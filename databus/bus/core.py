"""
Core data bus structures.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Hashable, List, Optional


Callback = Callable[[Any, Any], Any]
FetchFunction = Callable[[Callback], Any]


class DataBusError(Exception):
    """Usage error raised by the registry. Always carries the offending key."""

    def __init__(self, key: Hashable, message: str):
        super().__init__(f"{message}: {key!r}")
        self.key = key


class NoRegisteredCallbacksError(DataBusError):
    """complete_fetch called for a key nobody is waiting on."""

    def __init__(self, key: Hashable):
        super().__init__(
            key,
            "complete_fetch called, but there are no registered callbacks",
        )


class ScheduleOwnershipError(DataBusError):
    """schedule_fetch could not take ownership of the initial fetch."""

    def __init__(self, key: Hashable):
        super().__init__(
            key,
            "schedule_fetch registration found a pending fetch",
        )


class RefetchState(Enum):
    """Position of a key in its scheduled fetch cycle."""
    IDLE = "idle"           # No timer pending, no scheduled fetch running
    ARMED = "armed"         # Timer pending for the next cycle
    FETCHING = "fetching"   # Scheduled fetch started, waiting for completion


@dataclass(frozen=True)
class FetchResult:
    """Opaque (error, data) pair delivered to waiters and kept in cache."""
    error: Any = None
    data: Any = None

    def __iter__(self):
        yield self.error
        yield self.data


@dataclass
class RefetchConfig:
    """Recurring fetch configuration for a key."""
    interval: float
    fetch_fn: FetchFunction


@dataclass
class KeyRecord:
    """
    Per-key fetch/cache state.

    A record lives while it has waiters, a live result, or a refetch
    configuration. The registry prunes it as soon as none of those holds.
    """
    waiters: List[Callback] = field(default_factory=list)
    result: Optional[FetchResult] = None
    expires_at: Optional[float] = None   # None with a result = kept forever
    expiry_timer: Any = None
    refetch: Optional[RefetchConfig] = None
    refetch_timer: Any = None
    refetch_state: RefetchState = RefetchState.IDLE
    cycle: int = 0

    @property
    def in_flight(self) -> bool:
        return bool(self.waiters)

    def is_expired(self, now: float) -> bool:
        """True if a stored result has passed its expiration time."""
        if self.result is None:
            return False
        return self.expires_at is not None and self.expires_at <= now

    def clear_result(self) -> None:
        """Forget the cached result and cancel its expiration timer."""
        if self.expiry_timer is not None:
            self.expiry_timer.cancel()
            self.expiry_timer = None
        self.result = None
        self.expires_at = None

    def cancel_refetch(self, cycle: int) -> None:
        """Cancel the pending refetch timer, if any, and move to cycle."""
        if self.refetch_timer is not None:
            self.refetch_timer.cancel()
            self.refetch_timer = None
        self.refetch_state = RefetchState.IDLE
        # A timer that already fired for an older cycle sees the mismatch.
        # Cycle numbers come from the registry, so they never repeat per key.
        self.cycle = cycle

    @property
    def is_empty(self) -> bool:
        return not self.waiters and self.result is None and self.refetch is None


def noop_callback(error: Any, data: Any) -> None:
    """Callback used when the caller only wants the cache filled."""
    return None
