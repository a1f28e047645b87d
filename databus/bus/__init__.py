"""
Callback data bus: request coalescing, result retention and scheduled refresh.
"""
from .core import (
    DataBusError,
    FetchResult,
    KeyRecord,
    NoRegisteredCallbacksError,
    RefetchConfig,
    RefetchState,
    ScheduleOwnershipError,
)
from .retention import (
    FOREVER,
    NO_CACHE,
    RetentionKind,
    RetentionPolicy,
    resolve_retention,
)
from .dispatch import AsyncioDispatcher, Dispatcher, ThreadDispatcher
from .registry import KeyRegistry
from .coalescer import FetchFailedError, RequestCoalescer
from .manager import get_registry, reset_registry

__all__ = [
    # Core types
    "DataBusError",
    "FetchResult",
    "KeyRecord",
    "NoRegisteredCallbacksError",
    "RefetchConfig",
    "RefetchState",
    "ScheduleOwnershipError",
    # Retention
    "FOREVER",
    "NO_CACHE",
    "RetentionKind",
    "RetentionPolicy",
    "resolve_retention",
    # Dispatch
    "AsyncioDispatcher",
    "Dispatcher",
    "ThreadDispatcher",
    # Registry
    "KeyRegistry",
    # Coalescing
    "FetchFailedError",
    "RequestCoalescer",
    # Manager
    "get_registry",
    "reset_registry",
]
