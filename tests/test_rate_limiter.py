import asyncio

from cometscan.adapters.rate_limiter import RateLimiter


class FakeClock:
    def __init__(self) -> None:
        self.now = 1_000.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def test_spaces_calls_by_min_interval():
    clock = FakeClock()
    limiter = RateLimiter(0.35, clock=clock, sleep=clock.sleep)

    async def go():
        for _ in range(3):
            await limiter.acquire()

    asyncio.run(go())
    assert len(clock.sleeps) == 2
    assert all(abs(s - 0.35) < 1e-9 for s in clock.sleeps)


def test_no_wait_once_interval_elapsed():
    clock = FakeClock()
    limiter = RateLimiter(0.35, clock=clock, sleep=clock.sleep)

    async def go():
        await limiter.acquire()
        clock.now += 1.0
        async with limiter:
            pass

    asyncio.run(go())
    assert clock.sleeps == []


def test_shared_across_concurrent_callers():
    clock = FakeClock()
    limiter = RateLimiter.from_millis(350)
    limiter._clock, limiter._sleep = clock, clock.sleep

    async def go():
        await asyncio.gather(*(limiter.acquire() for _ in range(4)))

    asyncio.run(go())
    assert len(clock.sleeps) == 3
    assert abs(clock.now - 1_000.0 - 3 * 0.35) < 1e-9
