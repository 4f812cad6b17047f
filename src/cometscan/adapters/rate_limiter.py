from __future__ import annotations
import asyncio, time
from typing import Awaitable, Callable


class RateLimiter:
    """Minimum interval between outbound calls, shared by every client holding it.

    Callers wait their turn rather than being rejected. Build one per process
    and hand it to each upstream client; tests build their own.
    """

    def __init__(
        self,
        min_interval_s: float = 0.35,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.min_interval_s = min_interval_s
        self._clock = clock
        self._sleep = sleep
        self._last: float | None = None
        self._lock = asyncio.Lock()

    @classmethod
    def from_millis(cls, ms: int) -> "RateLimiter":
        return cls(ms / 1000.0)

    async def acquire(self) -> None:
        async with self._lock:
            if self._last is not None:
                wait = self._last + self.min_interval_s - self._clock()
                if wait > 0:
                    await self._sleep(wait)
            self._last = self._clock()

    async def __aenter__(self) -> "RateLimiter":
        await self.acquire()
        return self

    async def __aexit__(self, *exc: object) -> None:
        return None
