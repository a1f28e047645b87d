"""
Process-wide registry instance.
"""
import logging
import threading
from typing import Optional

from config.settings import settings

from .dispatch import AsyncioDispatcher, Dispatcher, ThreadDispatcher
from .registry import KeyRegistry

logger = logging.getLogger("databus.manager")

# Global registry instance
_registry: Optional[KeyRegistry] = None
_registry_lock = threading.Lock()


def _make_dispatcher(kind: str) -> Dispatcher:
    if kind == "asyncio":
        return AsyncioDispatcher()
    if kind == "thread":
        return ThreadDispatcher()
    raise ValueError(f"Unknown dispatcher: {kind!r}")


def get_registry() -> KeyRegistry:
    """Get or create the global registry."""
    global _registry
    with _registry_lock:
        if _registry is None:
            _registry = KeyRegistry(dispatcher=_make_dispatcher(settings.dispatcher))
            logger.debug(f"Created global registry ({settings.dispatcher} dispatcher)")
        return _registry


def reset_registry() -> None:
    """Shut down the global registry; the next get_registry() builds a new one."""
    global _registry
    with _registry_lock:
        registry, _registry = _registry, None
    if registry is not None:
        registry.shutdown()
