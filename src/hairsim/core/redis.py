"""Optional async Redis connection for the shared generation cache tier.

An empty REDIS_URL or an unreachable server yields None and the cache stays
in process memory; correctness does not depend on Redis.
"""

from typing import Optional

import structlog
from redis.asyncio import Redis

logger = structlog.get_logger()


async def connect_redis(redis_url: str) -> Optional[Redis]:
    """Connect and ping, or return None if disabled or unavailable."""
    url = (redis_url or "").strip()
    if not url:
        return None
    try:
        client = Redis.from_url(url, decode_responses=True)
        await client.ping()
    except Exception as e:
        logger.warning("redis.unavailable", error=str(e), error_type=type(e).__name__)
        return None
    logger.info("redis.connected", url=url.split("@")[-1])
    return client


async def close_redis(client: Optional[Redis]) -> None:
    if client is None:
        return
    try:
        await client.aclose()
    except Exception as e:
        logger.warning("redis.close_failed", error=str(e))
