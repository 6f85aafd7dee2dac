"""Redis client factory: used for the expiry sweep lock only.

NOT used for balance caching or locking (those go through PostgreSQL row locks).
"""

import uuid

import redis.asyncio as aioredis

from config.settings import settings

_redis_pool: aioredis.Redis | None = None

# Delete the key only if it still holds our token (lock may have expired and been re-taken)
_RELEASE_LOCK_SCRIPT = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("DEL", KEYS[1])
end
return 0
"""


async def get_redis() -> aioredis.Redis:
    """Get or create the Redis connection pool."""
    global _redis_pool  # noqa: PLW0603
    if _redis_pool is None:
        _redis_pool = aioredis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
        )
    return _redis_pool


async def close_redis() -> None:
    """Close the Redis connection pool."""
    global _redis_pool  # noqa: PLW0603
    if _redis_pool is not None:
        await _redis_pool.aclose()
        _redis_pool = None


async def acquire_lock(
    redis: aioredis.Redis, key: str, ttl_seconds: int
) -> str | None:
    """Try to take a best-effort distributed lock. Returns the owner token or None."""
    token = uuid.uuid4().hex
    acquired = await redis.set(key, token, nx=True, ex=ttl_seconds)
    return token if acquired else None


async def release_lock(redis: aioredis.Redis, key: str, token: str) -> bool:
    """Release a lock taken by acquire_lock. Returns False if it was no longer ours."""
    released = await redis.eval(_RELEASE_LOCK_SCRIPT, 1, key, token)
    return bool(released)
