from __future__ import annotations

from collections.abc import Callable
import json
import logging
import threading
import time
from typing import Any

import redis

logger = logging.getLogger(__name__)

CHALLENGES_KEY = 'challenges:list'
LEADERBOARD_KEY = 'leaderboard:data'
STATUS_KEY = 'status:global'


class Cache:
    """Key-value contract for cached reads. Values must be JSON-serialisable."""

    def get(self, key: str) -> Any | None:
        raise NotImplementedError

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        raise NotImplementedError

    def invalidate(self, *keys: str) -> None:
        raise NotImplementedError


class MemoryCache(Cache):
    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self.clock = clock
        self._lock = threading.Lock()
        self._data: dict[str, tuple[str, float | None]] = {}

    def get(self, key: str) -> Any | None:
        with self._lock:
            item = self._data.get(key)
            if item is None:
                return None
            raw, expires_at = item
            if expires_at is not None and self.clock() >= expires_at:
                del self._data[key]
                return None
        return json.loads(raw)

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        expires_at = self.clock() + ttl if ttl else None
        raw = json.dumps(value, default=str)
        with self._lock:
            self._data[key] = (raw, expires_at)

    def invalidate(self, *keys: str) -> None:
        with self._lock:
            for key in keys:
                self._data.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()


class RedisCache(Cache):
    def __init__(self, client: redis.Redis) -> None:
        self.client = client

    @classmethod
    def from_url(cls, url: str) -> RedisCache:
        return cls(redis.Redis.from_url(url, decode_responses=True, socket_timeout=2))

    def get(self, key: str) -> Any | None:
        raw = self.client.get(key)
        return json.loads(raw) if raw is not None else None

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        raw = json.dumps(value, default=str)
        if ttl:
            self.client.set(key, raw, px=int(ttl * 1000))
        else:
            self.client.set(key, raw)

    def invalidate(self, *keys: str) -> None:
        if keys:
            self.client.delete(*keys)


def read_through(cache: Cache, key: str, loader: Callable[[], Any], ttl: float | None = None) -> Any:
    """Serve ``key`` from cache, falling back to ``loader`` on a miss.

    A broken cache never fails the read: errors are logged and the value is
    recomputed from the store.
    """
    try:
        cached = cache.get(key)
    except Exception:  # noqa: BLE001
        logger.warning('Cache read failed for %s, recomputing', key, exc_info=True)
        return loader()
    if cached is not None:
        return cached

    value = loader()
    try:
        cache.set(key, value, ttl)
    except Exception:  # noqa: BLE001
        logger.warning('Cache write failed for %s', key, exc_info=True)
    return value
