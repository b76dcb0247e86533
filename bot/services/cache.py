from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

import redis.asyncio as redis

from core.config import RedisConfig

LOGGER = logging.getLogger(__name__)


class CacheBackend(Protocol):
    """Expiring counters shared by everything that guards ticket creation."""

    async def get(self, key: str) -> int | None: ...
    async def incr(self, key: str, ttl: int | None = None) -> int: ...
    async def delete(self, key: str) -> None: ...
    async def close(self) -> None: ...


@dataclass(slots=True)
class _Counter:
    count: int
    expires_at: float | None


class MemoryCache:
    """Process-local counters; only guards a single bot process."""

    def __init__(self, time_func: Callable[[], float] = time.monotonic) -> None:
        self._time = time_func
        self._counters: dict[str, _Counter] = {}
        self._lock = asyncio.Lock()

    def _current(self, key: str) -> _Counter | None:
        counter = self._counters.get(key)
        if counter and counter.expires_at is not None and self._time() >= counter.expires_at:
            del self._counters[key]
            return None
        return counter

    async def get(self, key: str) -> int | None:
        async with self._lock:
            counter = self._current(key)
            return counter.count if counter else None

    async def incr(self, key: str, ttl: int | None = None) -> int:
        async with self._lock:
            counter = self._current(key)
            if counter is None:
                expires_at = self._time() + ttl if ttl else None
                counter = self._counters[key] = _Counter(0, expires_at)
            counter.count += 1
            return counter.count

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._counters.pop(key, None)

    async def close(self) -> None:
        self._counters.clear()


class RedisCache:
    """Counters in Redis so several bot processes share one creation guard."""

    def __init__(self, url: str, *, prefix: str = "") -> None:
        self._client = redis.from_url(url, decode_responses=True)
        self._prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def get(self, key: str) -> int | None:
        raw = await self._client.get(self._key(key))
        return int(raw) if raw is not None else None

    async def incr(self, key: str, ttl: int | None = None) -> int:
        count = int(await self._client.incr(self._key(key)))
        # The window starts at the first hit; later hits must not extend it.
        if ttl and count == 1:
            await self._client.expire(self._key(key), ttl)
        return count

    async def delete(self, key: str) -> None:
        await self._client.delete(self._key(key))

    async def close(self) -> None:
        await self._client.aclose()


async def build_cache(config: RedisConfig) -> CacheBackend:
    if not config.enabled:
        LOGGER.info("Creation guard uses in-process counters")
        return MemoryCache()
    cache = RedisCache(config.url, prefix=config.key_prefix)
    LOGGER.info("Creation guard uses Redis at %s (prefix %r)", config.url, config.key_prefix)
    return cache
