from __future__ import annotations

import threading
import time
from typing import Any, Callable, Dict, Optional, Protocol, Tuple


def config_cache_key(owner_id: str) -> str:
    return f"user_config_{owner_id}"


class ConfigCache(Protocol):
    async def get(self, key: str) -> Optional[Any]: ...

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None: ...

    async def remove(self, key: str) -> None: ...


class InProcessCache:
    """TTL map behind a single lock; expired entries are dropped on read."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._entries: Dict[str, Tuple[float, Any]] = {}
        self._lock = threading.Lock()
        self._clock = clock

    async def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            return value

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        with self._lock:
            self._entries[key] = (self._clock() + ttl_seconds, value)

    async def remove(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class RedisConfigCache:
    """ConfigCache over ``RedisCache`` for multi-instance deployments."""

    def __init__(self, redis_cache) -> None:
        self.redis = redis_cache

    async def get(self, key: str) -> Optional[Any]:
        return await self.redis.get_json(key)

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        await self.redis.set_json(key, value, ttl_seconds)

    async def remove(self, key: str) -> None:
        await self.redis.delete(key)
