"""
Redis client used as the domain event transport.

The client is created lazily on first use and closed on shutdown; the outbox
worker publishes committed domain events through it.
"""
import asyncio
import json
from typing import Any
from urllib.parse import urlparse

import redis.asyncio as aioredis

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)

_redis_client: aioredis.Redis | None = None
_init_lock = asyncio.Lock()


def _mask_redis_url(url: str) -> str:
    """Hide the password part of REDIS_URL for logs (redis://:****@host:6379)"""
    try:
        parsed = urlparse(url)
    except ValueError:
        return "redis://****"
    if parsed.password:
        return url.replace(f":{parsed.password}@", ":****@")
    return url


async def get_redis() -> aioredis.Redis:
    """Return the shared Redis client (async, connection pool)"""
    global _redis_client
    if _redis_client is not None:
        return _redis_client

    async with _init_lock:
        if _redis_client is not None:
            return _redis_client

        client = aioredis.from_url(settings.REDIS_URL, decode_responses=True)
        await client.ping()
        _redis_client = client
        logger.info("Redis client initialized", extra_data={
            "url": _mask_redis_url(settings.REDIS_URL),
        })
    return _redis_client


async def close_redis() -> None:
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis connection closed")


def event_channel(entity_type: str, to_state: str) -> str:
    """Channel name for a domain event, e.g. marketplace:application:selected"""
    return f"{settings.EVENT_CHANNEL_PREFIX}:{entity_type}:{to_state}"


async def publish_event(entity_type: str, to_state: str, payload: dict[str, Any]) -> int:
    """Publish a serialized domain event; returns the number of receivers"""
    client = await get_redis()
    channel = event_channel(entity_type, to_state)
    receivers = await client.publish(channel, json.dumps(payload, default=str))
    logger.debug(
        "Domain event published",
        extra_data={"channel": channel, "receivers": receivers}
    )
    return receivers
