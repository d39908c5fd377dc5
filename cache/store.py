"""
cache/store.py -- Optional key/value cache fronting the record store.

The cache is an accelerator, never a source of truth. Three backends, chosen
by CACHE_BACKEND:

    redis   RedisCache   -- shared across workers (redis.asyncio)
    memory  MemoryCache  -- in-process dict with TTL, single worker only
    none    no cache     -- create_cache() returns None; a legal production setting

Backends raise on failure (connection refused, timeout, bad payload). They
do NOT swallow errors themselves: the caller decides what a failure means.
auth/identity.py treats every cache error as a miss, so a dead cache costs
latency and nothing else.

Values are JSON-serializable dicts. Keys follow the CacheKeys helpers below;
patterns use glob syntax ("user:42*") for delete_pattern().

Usage:
    cache = create_cache(get_settings())
    if cache is not None:
        await cache.set(CacheKeys.user(42), {...}, CacheTTL.SHORT)
        data = await cache.get(CacheKeys.user(42))
        await cache.delete_pattern(CacheKeys.user_pattern(42))
"""

from __future__ import annotations

import fnmatch
import json
import logging
import time
from typing import Optional, Protocol

import redis.asyncio as aioredis

logger = logging.getLogger("techpacker.cache")


class CacheKeys:
    """Key builders. Every key for one entity shares a prefix so a single
    pattern delete removes all of them."""

    @staticmethod
    def user(user_id: int) -> str:
        return f"user:{user_id}"

    @staticmethod
    def user_pattern(user_id: int) -> str:
        # Trailing ":" keeps user:1 from matching user:12
        return f"user:{user_id}:*"

    @staticmethod
    def document_access(document_id: int) -> str:
        return f"document:{document_id}:access"

    @staticmethod
    def document_pattern(document_id: int) -> str:
        return f"document:{document_id}:*"


class CacheTTL:
    SHORT = 300  # 5 minutes
    MEDIUM = 1800  # 30 minutes
    LONG = 3600  # 1 hour


class Cache(Protocol):
    async def get(self, key: str) -> Optional[dict]: ...

    async def set(self, key: str, value: dict, ttl_seconds: int) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def delete_pattern(self, pattern: str) -> int: ...

    async def close(self) -> None: ...


class RedisCache:
    """Thin redis.asyncio wrapper storing JSON blobs with a TTL."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 2.0) -> None:
        self.redis_url = redis_url
        # Short timeouts: a slow cache must not hold a request hostage.
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    async def get(self, key: str) -> Optional[dict]:
        raw = await self.client.get(key)
        return json.loads(raw) if raw is not None else None

    async def set(self, key: str, value: dict, ttl_seconds: int) -> None:
        await self.client.set(key, json.dumps(value), ex=max(1, int(ttl_seconds)))

    async def delete(self, key: str) -> None:
        await self.client.delete(key)

    async def delete_pattern(self, pattern: str) -> int:
        """Delete every key matching pattern. Uses SCAN, not KEYS, to avoid blocking Redis."""
        keys = [key async for key in self.client.scan_iter(match=pattern, count=200)]
        if not keys:
            return 0
        return await self.client.delete(*keys)

    async def close(self) -> None:
        await self.client.aclose()


class MemoryCache:
    """In-process TTL cache with the same contract as RedisCache.

    Entries expire lazily on read; purge_expired() sweeps the rest. Suitable
    for a single worker and for tests.
    """

    def __init__(self) -> None:
        self._entries: dict[str, tuple[str, float]] = {}

    async def get(self, key: str) -> Optional[dict]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        raw, expires_at = entry
        if time.monotonic() >= expires_at:
            self._entries.pop(key, None)
            return None
        return json.loads(raw)

    async def set(self, key: str, value: dict, ttl_seconds: int) -> None:
        self._entries[key] = (json.dumps(value), time.monotonic() + ttl_seconds)

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    async def delete_pattern(self, pattern: str) -> int:
        matched = [k for k in self._entries if fnmatch.fnmatchcase(k, pattern)]
        for key in matched:
            del self._entries[key]
        return len(matched)

    def purge_expired(self) -> int:
        """Drop every expired entry. Returns the number removed."""
        now = time.monotonic()
        expired = [k for k, (_, expires_at) in self._entries.items() if now >= expires_at]
        for key in expired:
            del self._entries[key]
        return len(expired)

    async def close(self) -> None:
        self._entries.clear()


def create_cache(settings) -> Optional[Cache]:
    """Build the configured cache backend, or None when caching is disabled."""
    if settings.cache_backend == "redis":
        logger.info("Cache backend: redis (%s)", settings.redis_url.rsplit("@", 1)[-1])
        return RedisCache(settings.redis_url)
    if settings.cache_backend == "memory":
        logger.info("Cache backend: in-process memory")
        return MemoryCache()
    logger.info("Cache disabled")
    return None
