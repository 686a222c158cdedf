"""Redis-backed mutual exclusion for scheduled sweeps.

Two app instances (or a scheduler tick and a manual trigger) must not run
the same sweep at once.  Each sweep takes `farmbid:sweep:<name>` with
a non-blocking redis-py Lock before it starts and releases it when it
finishes; the lock timeout frees the key if the holder dies mid-run.

If Redis is unreachable the sweep runs anyway.  Every sweep step is
guarded by optimistic row versions, so an unlocked overlap wastes work
but cannot double-charge or double-spawn.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import redis.asyncio as redis

from farmbid.config import settings

logger = logging.getLogger(__name__)

# Global Redis connection pool
_redis_client: Optional[redis.Redis] = None


async def get_redis() -> redis.Redis:
    """Get or create Redis client connection."""
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=10,
        )
    return _redis_client


async def close_redis():
    """Close Redis connection (call on app shutdown)."""
    global _redis_client
    if _redis_client:
        await _redis_client.close()
        _redis_client = None


def lock_key(name: str) -> str:
    return f"farmbid:sweep:{name}"


@asynccontextmanager
async def sweep_lock(name: str, ttl: int | None = None, client: redis.Redis | None = None):
    """Hold the lock for sweep `name` for the duration of the block.

    Yields True when the lock was acquired (or Redis is down and the sweep
    runs unlocked), False when another holder has it and the caller should
    skip this run.
    """
    ttl = ttl or settings.sweep_lock_ttl_seconds
    key = lock_key(name)

    try:
        redis_client = client or await get_redis()
        lock = redis_client.lock(key, timeout=ttl, blocking=False)
        acquired = await lock.acquire()
    except redis.RedisError as e:
        logger.warning(f"Redis error (running sweep {name} unlocked): {e}")
        yield True
        return

    if not acquired:
        logger.info(f"Sweep {name} already running elsewhere, skipping")
        yield False
        return

    try:
        yield True
    finally:
        try:
            await lock.release()
        except redis.RedisError as e:
            # LockError covers a lock that expired and was taken over
            logger.warning(f"Failed to release sweep lock {key}: {e}")
