import redis.asyncio as aioredis
from dispatch_engine.config import get_settings

settings = get_settings()

_redis_pool: aioredis.Redis | None = None


async def get_redis() -> aioredis.Redis:
    global _redis_pool
    if _redis_pool is None:
        _redis_pool = aioredis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=100,
        )
    return _redis_pool


async def close_redis() -> None:
    global _redis_pool
    if _redis_pool:
        await _redis_pool.aclose()
        _redis_pool = None


# ---------------------------------------------------------------------------
# Keys / channels
# ---------------------------------------------------------------------------

def request_channel(request_id: str) -> str:
    return f"events:request:{request_id}"


def driver_channel(driver_id: str) -> str:
    return f"events:driver:{driver_id}"


def request_status_key(request_id: str) -> str:
    return f"request:{request_id}:status"


# ---------------------------------------------------------------------------
# Cache helpers
# ---------------------------------------------------------------------------

async def cache_set(redis: aioredis.Redis, key: str, value: str, ttl: int) -> None:
    await redis.setex(key, ttl, value)


async def cache_get(redis: aioredis.Redis, key: str) -> str | None:
    return await redis.get(key)


async def cache_delete(redis: aioredis.Redis, key: str) -> None:
    await redis.delete(key)
