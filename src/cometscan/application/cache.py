from __future__ import annotations
import inspect, logging, time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar, Union

log = logging.getLogger(__name__)
T = TypeVar("T")

LIST_TTL_S = 60.0    # list-style queries
STATS_TTL_S = 30.0   # aggregate stats


@dataclass(slots=True, frozen=True)
class CacheEntry:
    value: Any
    expires_at: float


class QueryCache:
    """Short-TTL memo for expensive read-path queries.

    Expired entries are dropped lazily on the next lookup. Concurrent misses on
    one key each compute; the last write wins. Failures are never cached.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}

    def get(self, key: str) -> tuple[bool, Any]:
        e = self._entries.get(key)
        if e is None:
            return False, None
        if self._clock() > e.expires_at:
            del self._entries[key]
            return False, None
        return True, e.value

    def set(self, key: str, value: Any, ttl_s: float) -> None:
        self._entries[key] = CacheEntry(value, self._clock() + ttl_s)

    async def get_or_compute(self, key: str, ttl_s: float,
                             compute: Callable[[], Union[T, Awaitable[T]]]) -> T:
        hit, value = self.get(key)
        if hit:
            log.debug("cache hit %s", key)
            return value
        result = compute()
        if inspect.isawaitable(result):
            result = await result
        self.set(key, result, ttl_s)
        return result

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
