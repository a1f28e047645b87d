"""
Retention policy for completed fetch results.

complete_fetch accepts a retention value in seconds:
    None       -> do not cache, the result only goes to current waiters
    > 0        -> cache for that many seconds
    <= 0       -> cache until replaced by a later completion
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional


FOREVER: float = -1.0
NO_CACHE: Optional[float] = None


class RetentionKind(Enum):
    """How long a completed result stays on the bus."""
    NONE = "none"         # Delivered to waiters, then dropped
    TIMED = "timed"       # Kept until expires_at
    FOREVER = "forever"   # Kept until replaced


@dataclass(frozen=True)
class RetentionPolicy:
    kind: RetentionKind
    seconds: Optional[float] = None

    @property
    def caches(self) -> bool:
        return self.kind is not RetentionKind.NONE


def resolve_retention(retention: Optional[float]) -> RetentionPolicy:
    """
    Turn a raw retention argument into a policy.

    Args:
        retention: Seconds to keep the result, None for no caching,
            zero or negative to keep it indefinitely

    Returns:
        RetentionPolicy describing the caching behaviour

    Raises:
        TypeError: If retention is not a number
    """
    if retention is None:
        return RetentionPolicy(RetentionKind.NONE)
    if isinstance(retention, bool) or not isinstance(retention, (int, float)):
        raise TypeError(f"retention must be a number of seconds or None, got {retention!r}")
    if retention > 0:
        return RetentionPolicy(RetentionKind.TIMED, float(retention))
    return RetentionPolicy(RetentionKind.FOREVER)
