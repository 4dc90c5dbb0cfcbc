"""
Async Redis client for the counter store. If redis_url is empty the process uses
the in-memory store; if Redis is configured but unreachable at startup we log and
fall back to memory (single worker only) rather than refusing to boot.
"""
import logging
from typing import Any

from redis.exceptions import RedisError

from genrelay.config import Settings
from genrelay.core.counter_store import CounterStore, MemoryCounterStore, RedisCounterStore

logger = logging.getLogger(__name__)


def _redacted(url: str) -> str:
    return url.split("@")[-1] if "@" in url else url


async def connect_redis(url: str) -> Any:
    """One async Redis client, or None if disabled/unavailable."""
    url = (url or "").strip()
    if not url:
        return None
    try:
        from redis.asyncio import Redis
        client = Redis.from_url(url, decode_responses=True)
        await client.ping()
        logger.info("Redis counter store connected: %s", _redacted(url))
        return client
    except (RedisError, OSError) as e:
        logger.warning("Redis unavailable (using in-memory counters): %s", e, exc_info=False)
        return None


async def build_counter_store(settings: Settings) -> CounterStore:
    """Redis-backed store when configured and reachable, else the memory store."""
    client = await connect_redis(settings.redis_url)
    if client is None:
        return MemoryCounterStore()
    return RedisCounterStore(client)
