from typing import Any, Dict, List, Tuple

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from app.chat.service.rate_limiter import RedisRateLimiter, SlidingWindowRateLimiter


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakePipeline:
    def __init__(self):
        self.ops: List[Tuple[str, tuple]] = []

    def zremrangebyscore(self, key, low, high):
        self.ops.append(("zremrangebyscore", (key, low, high)))

    def zadd(self, key, mapping):
        self.ops.append(("zadd", (key, mapping)))

    def zcard(self, key):
        self.ops.append(("zcard", (key,)))

    def expire(self, key, seconds):
        self.ops.append(("expire", (key, seconds)))


class FakeRedisClient:
    """Sorted sets in a dict; enough of RedisClient for the limiter."""

    def __init__(self):
        self.sets: Dict[str, Dict[Any, float]] = {}
        self.expiry: Dict[str, int] = {}

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline()

    async def execute_pipeline(self, pipe: FakePipeline) -> List[Any]:
        results = []
        for op, args in pipe.ops:
            if op == "zremrangebyscore":
                key, low, high = args
                members = self.sets.setdefault(key, {})
                stale = [m for m, score in members.items() if low <= score <= high]
                for m in stale:
                    del members[m]
                results.append(len(stale))
            elif op == "zadd":
                key, mapping = args
                self.sets.setdefault(key, {}).update(mapping)
                results.append(len(mapping))
            elif op == "zcard":
                results.append(len(self.sets.get(args[0], {})))
            elif op == "expire":
                self.expiry[args[0]] = args[1]
                results.append(True)
        return results

    async def sorted_set_remove(self, key: str, *members: Any) -> int:
        removed = 0
        for m in members:
            if self.sets.get(key, {}).pop(m, None) is not None:
                removed += 1
        return removed


class DownRedisClient(FakeRedisClient):
    async def execute_pipeline(self, pipe: FakePipeline) -> List[Any]:
        raise RedisConnectionError("connection refused")


async def test_allows_up_to_the_limit_then_rejects():
    limiter = SlidingWindowRateLimiter(max_events=3, window_seconds=60, clock=FakeClock())

    results = [await limiter.allow("u1") for _ in range(4)]

    assert results == [True, True, True, False]


async def test_window_slides():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(max_events=2, window_seconds=60, clock=clock)
    assert await limiter.allow("u1")
    clock.advance(30)
    assert await limiter.allow("u1")
    assert not await limiter.allow("u1")

    clock.advance(31)  # first send has left the window
    assert await limiter.allow("u1")
    assert not await limiter.allow("u1")


async def test_rejected_attempts_do_not_extend_the_window():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(max_events=1, window_seconds=10, clock=clock)
    assert await limiter.allow("u1")
    for _ in range(5):
        clock.advance(1)
        assert not await limiter.allow("u1")

    clock.advance(5)
    assert await limiter.allow("u1")


async def test_senders_are_limited_independently():
    limiter = SlidingWindowRateLimiter(max_events=1, window_seconds=60, clock=FakeClock())

    assert await limiter.allow("u1")
    assert await limiter.allow("u2")
    assert not await limiter.allow("u1")


async def test_idle_senders_are_swept():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(max_events=5, window_seconds=1, clock=clock)
    limiter.SWEEP_EVERY = 3
    await limiter.allow("a")
    await limiter.allow("b")
    clock.advance(5)

    await limiter.allow("c")

    assert limiter.tracked_senders() == 1


@pytest.mark.parametrize("max_events,window", [(0, 60), (5, 0)])
def test_rejects_bad_configuration(max_events, window):
    with pytest.raises(ValueError):
        SlidingWindowRateLimiter(max_events=max_events, window_seconds=window)


async def test_redis_limiter_counts_per_sender():
    clock = FakeClock()
    redis_client = FakeRedisClient()
    limiter = RedisRateLimiter(redis_client, max_events=2, window_seconds=60, clock=clock)

    assert await limiter.allow("u1")
    assert await limiter.allow("u1")
    assert not await limiter.allow("u1")
    assert await limiter.allow("u2")

    # the rejected attempt was not recorded
    assert len(redis_client.sets["chat:rate:u1"]) == 2
    assert redis_client.expiry["chat:rate:u1"] == 61

    clock.advance(61)
    assert await limiter.allow("u1")


async def test_redis_limiter_fails_open():
    limiter = RedisRateLimiter(DownRedisClient(), max_events=1, window_seconds=60, clock=FakeClock())

    assert await limiter.allow("u1")
    assert await limiter.allow("u1")
