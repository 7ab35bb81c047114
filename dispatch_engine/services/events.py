"""
Status event stream over Redis pub/sub.

Every state change is published to ``events:request:{id}`` (and, when a driver
is involved, ``events:driver:{id}``) and the cached request status is dropped.
Publishing is best effort: Redis trouble is logged, state is already committed.
"""
import json
import logging
from collections.abc import AsyncIterator
from datetime import datetime
from typing import Any

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from dispatch_engine.database import utcnow
from dispatch_engine.redis_client import cache_delete, driver_channel, request_channel, request_status_key

logger = logging.getLogger(__name__)


def _default(value: Any) -> str:
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


class EventBus:
    def __init__(self, redis: aioredis.Redis):
        self.redis = redis

    async def publish_request(self, request_id: str, event: str, **data: Any) -> None:
        await self._publish(request_channel(request_id), {"event": event, "request_id": request_id, **data})
        try:
            await cache_delete(self.redis, request_status_key(request_id))
        except RedisError as exc:
            logger.warning("Status cache invalidation failed for request=%s: %s", request_id, exc)

    async def publish_driver(self, driver_id: str, event: str, **data: Any) -> None:
        await self._publish(driver_channel(driver_id), {"event": event, "driver_id": driver_id, **data})

    async def _publish(self, channel: str, message: dict[str, Any]) -> None:
        message.setdefault("at", utcnow())
        try:
            await self.redis.publish(channel, json.dumps(message, default=_default))
        except RedisError as exc:
            logger.warning("Publish to %s failed (%s): %s", channel, message.get("event"), exc)

    async def subscribe(self, channel: str) -> AsyncIterator[str]:
        """Yield raw JSON messages from ``channel`` until the consumer stops."""
        pubsub = self.redis.pubsub()
        await pubsub.subscribe(channel)
        try:
            async for message in pubsub.listen():
                if message.get("type") == "message":
                    yield message["data"]
        finally:
            await pubsub.unsubscribe(channel)
            await pubsub.aclose()
