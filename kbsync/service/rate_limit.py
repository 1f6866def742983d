from __future__ import annotations

import math
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Protocol

UPDATE_ROUTE = "configuration:update"
RECONCILE_ROUTE = "configuration:reconcile"


def rate_limit_key(owner_id: str, route: str) -> str:
    return f"rate_limit_{owner_id}_{route}"


@dataclass
class RateDecision:
    allowed: bool
    remaining: int
    limit: int
    retry_after: int = 0


class RateLimiter(Protocol):
    async def check(self, key: str) -> RateDecision: ...

    async def remaining_requests(self, key: str) -> int: ...

    @property
    def limit(self) -> int: ...


class SlidingWindowRateLimiter:
    """Per-key list of request timestamps pruned to the window on every call."""

    def __init__(
        self,
        limit: int,
        window_seconds: int,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._requests: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()
        self._last_sweep = clock()

    @property
    def limit(self) -> int:
        return self._limit

    def _prune(self, key: str, now: float) -> Deque[float]:
        stamps = self._requests.setdefault(key, deque())
        cutoff = now - self.window_seconds
        while stamps and stamps[0] <= cutoff:
            stamps.popleft()
        return stamps

    def _sweep(self, now: float) -> None:
        """Drop keys whose newest request has left the window; at most once per window."""
        if now - self._last_sweep < self.window_seconds:
            return
        self._last_sweep = now
        cutoff = now - self.window_seconds
        expired = [key for key, stamps in self._requests.items() if not stamps or stamps[-1] <= cutoff]
        for key in expired:
            del self._requests[key]

    async def check(self, key: str) -> RateDecision:
        with self._lock:
            now = self._clock()
            self._sweep(now)
            stamps = self._prune(key, now)
            if len(stamps) >= self._limit:
                retry_after = max(1, math.ceil(stamps[0] + self.window_seconds - now))
                return RateDecision(False, 0, self._limit, retry_after)
            stamps.append(now)
            return RateDecision(True, max(0, self._limit - len(stamps)), self._limit)

    async def remaining_requests(self, key: str) -> int:
        with self._lock:
            stamps = self._prune(key, self._clock())
            if not stamps:
                self._requests.pop(key, None)
            return max(0, self._limit - len(stamps))


class RedisRateLimiter:
    """RateLimiter over ``RedisCache``'s sorted-set sliding window."""

    def __init__(self, redis_cache, limit: int, window_seconds: int) -> None:
        self.redis = redis_cache
        self._limit = limit
        self.window_seconds = window_seconds

    @property
    def limit(self) -> int:
        return self._limit

    async def check(self, key: str) -> RateDecision:
        allowed, remaining, retry_after = await self.redis.check_rate_limit(
            key, self._limit, self.window_seconds
        )
        return RateDecision(allowed, remaining, self._limit, retry_after)

    async def remaining_requests(self, key: str) -> int:
        return await self.redis.remaining_requests(key, self._limit, self.window_seconds)
