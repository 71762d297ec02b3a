"""Job locks — keep two runs of the same background job from overlapping.

``hold(name)`` is an async context manager yielding True when this worker
got the lock and False when another run still holds it; the caller skips
its work in the second case.

Backends:
  - RedisJobLock  SET NX EX with a per-holder token, released only by the
                  holder (compare-and-delete script).  Works across workers.
  - LocalJobLock  one asyncio.Lock per job name.  Single process only.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import redis.asyncio as redis

from microfarm.config import settings

logger = logging.getLogger(__name__)

# Delete the key only while it still carries our token
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""

_redis_client: Optional[redis.Redis] = None


async def get_redis() -> redis.Redis:
    """Get or create Redis client connection."""
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
    return _redis_client


async def close_redis():
    """Close Redis connection (call on app shutdown)."""
    global _redis_client
    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None


class RedisJobLock:
    def __init__(self, client, ttl_seconds: int, prefix: str = "microfarm:job-lock:"):
        self._client = client
        self._ttl = ttl_seconds
        self._prefix = prefix

    @asynccontextmanager
    async def hold(self, name: str) -> AsyncIterator[bool]:
        key = f"{self._prefix}{name}"
        token = secrets.token_hex(16)
        acquired = await self._client.set(key, token, nx=True, ex=self._ttl)
        if not acquired:
            logger.info("Job %s already running elsewhere", name)
            yield False
            return
        try:
            yield True
        finally:
            await self._client.eval(_RELEASE_SCRIPT, 1, key, token)


class LocalJobLock:
    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}

    @asynccontextmanager
    async def hold(self, name: str) -> AsyncIterator[bool]:
        lock = self._locks.setdefault(name, asyncio.Lock())
        if lock.locked():
            logger.info("Job %s already running", name)
            yield False
            return
        async with lock:
            yield True


_local_lock = LocalJobLock()


async def get_job_lock() -> RedisJobLock | LocalJobLock:
    if settings.job_lock_backend == "local":
        return _local_lock
    return RedisJobLock(await get_redis(), settings.job_lock_ttl_seconds)
