"""Time-to-live memoization for evaluator output.

Each engine owns one cachetools.TTLCache. Entries are advisory: a stale hit
only means slightly outdated output, so invalidation is a plain clear() on
every write path rather than dependency tracking. Expired entries are purged
on every insert and the cache is bounded by `maxsize`.
"""

import json
import time
from typing import Callable, Optional

from cachetools import TTLCache

DEFAULT_MAX_ENTRIES = 1024


def ttl_cache(ttl_seconds: float, maxsize: int = DEFAULT_MAX_ENTRIES,
              clock: Callable[[], float] = time.monotonic) -> TTLCache:
    return TTLCache(maxsize=maxsize, ttl=ttl_seconds, timer=clock)


def options_key(options: Optional[dict]) -> str:
    """Stable hashable form of an options dict, for use inside cache keys."""
    return json.dumps(options or {}, sort_keys=True, default=str)
