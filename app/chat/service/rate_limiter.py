"""
Per-sender sliding-window throttle for message submission.

Both limiters fail open: if the limiter's own state cannot be read or written
the send is allowed and a warning is logged.
"""

from abc import ABC, abstractmethod
from collections import deque
from typing import Callable, Deque, Dict
import logging
import time
import uuid

from redis.exceptions import RedisError

from pkg.log.logger import get_logger
from pkg.redis.client import RedisClient


class IRateLimiter(ABC):
    @abstractmethod
    async def allow(self, sender_id: str) -> bool:
        """Record and allow a send, or return False if the sender is over quota."""
        pass


class SlidingWindowRateLimiter(IRateLimiter):
    """In-process limiter. State is lost on restart."""

    SWEEP_EVERY = 1000  # checks between idle-sender sweeps

    def __init__(
        self,
        max_events: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
        logger: logging.Logger | None = None,
    ):
        if max_events < 1 or window_seconds <= 0:
            raise ValueError("Rate limit needs max_events >= 1 and a positive window")
        self.max_events = max_events
        self.window_seconds = window_seconds
        self.clock = clock
        self.logger = logger or get_logger(__name__)
        self._windows: Dict[str, Deque[float]] = {}
        self._checks = 0

    def _prune(self, window: Deque[float], now: float) -> None:
        cutoff = now - self.window_seconds
        while window and window[0] <= cutoff:
            window.popleft()

    def _sweep(self, now: float) -> None:
        for sender_id in list(self._windows):
            window = self._windows[sender_id]
            self._prune(window, now)
            if not window:
                del self._windows[sender_id]

    async def allow(self, sender_id: str) -> bool:
        now = self.clock()
        self._checks += 1
        if self._checks % self.SWEEP_EVERY == 0:
            self._sweep(now)

        window = self._windows.setdefault(str(sender_id), deque())
        self._prune(window, now)
        if len(window) >= self.max_events:
            self.logger.warning(f"Rate limit hit for sender={sender_id} ({len(window)}/{self.max_events})")
            return False
        window.append(now)
        return True

    def tracked_senders(self) -> int:
        return len(self._windows)


class RedisRateLimiter(IRateLimiter):
    """Limiter shared by every gateway process through a Redis sorted set per sender."""

    KEY_PREFIX = "chat:rate:"

    def __init__(
        self,
        redis_client: RedisClient,
        max_events: int,
        window_seconds: float,
        clock: Callable[[], float] = time.time,
        logger: logging.Logger | None = None,
    ):
        if max_events < 1 or window_seconds <= 0:
            raise ValueError("Rate limit needs max_events >= 1 and a positive window")
        self.redis_client = redis_client
        self.max_events = max_events
        self.window_seconds = window_seconds
        self.clock = clock
        self.logger = logger or get_logger(__name__)

    def _key(self, sender_id: str) -> str:
        return f"{self.KEY_PREFIX}{sender_id}"

    async def allow(self, sender_id: str) -> bool:
        key = self._key(sender_id)
        now = self.clock()
        member = f"{now}:{uuid.uuid4().hex}"
        try:
            pipe = self.redis_client.pipeline(transaction=True)
            pipe.zremrangebyscore(key, 0, now - self.window_seconds)
            pipe.zadd(key, {member: now})
            pipe.zcard(key)
            pipe.expire(key, max(int(self.window_seconds), 1) + 1)
            _, _, count, _ = await self.redis_client.execute_pipeline(pipe)

            if count > self.max_events:
                # Over quota: this attempt must not count against the window
                await self.redis_client.sorted_set_remove(key, member)
                self.logger.warning(f"Rate limit hit for sender={sender_id} ({count - 1}/{self.max_events})")
                return False
            return True
        except RedisError as e:
            self.logger.warning(f"Rate limiter store unavailable, allowing send for sender={sender_id}: {e}")
            return True
