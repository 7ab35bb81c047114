import json
import logging
from typing import Any, Optional

import redis.asyncio as aioredis
from fastapi import Response
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

IDEMPOTENCY_TTL = 86400  # 24 hours


def _cache_key(scope: str, key: str) -> str:
    return f"idempotency:{scope}:{key}"


async def check_idempotency(redis: aioredis.Redis, scope: str, key: Optional[str]) -> Optional[Response]:
    """
    Returns the stored response if ``key`` was already used by ``scope``
    (usually the requester id), otherwise None (proceed normally).
    """
    if not key:
        return None
    try:
        cached = await redis.get(_cache_key(scope, key))
    except RedisError as exc:
        logger.warning("Idempotency lookup failed, proceeding without replay: %s", exc)
        return None

    if cached:
        data = json.loads(cached)
        return JSONResponse(
            content=data["body"],
            status_code=data["status_code"],
            headers={"X-Idempotency-Replay": "true"},
        )
    return None


async def store_idempotency_result(redis: aioredis.Redis, scope: str, key: str, status_code: int, body: Any) -> None:
    """Persist the response for the given idempotency key (24h TTL)."""
    try:
        await redis.setex(
            _cache_key(scope, key),
            IDEMPOTENCY_TTL,
            json.dumps({"status_code": status_code, "body": body}),
        )
    except RedisError as exc:
        logger.warning("Idempotency store failed for key=%s: %s", key, exc)
