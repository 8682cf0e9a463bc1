"""Redis connection management.

when REDIS_URL is configured, we create a real connection pool;
when it's None (local dev, tests), session storage and the data-sync
broadcast fall back to in-memory implementations and no Redis server
is needed.

WHY REDIS?
----------
Several store contexts (the equivalent of browser tabs) share two
things:
  - the persisted session (the logged-in user's record and token)
  - the data-sync invalidation channel

Inside one process an in-memory hub is enough.  Across processes the
contexts need a shared key-value store with pub/sub, and Redis gives
both: plain keys for the session, PUBLISH/SUBSCRIBE for change
notifications.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import redis.asyncio as aioredis

from campus_hub.core.config import SETTINGS

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Conditional Redis client (None when REDIS_URL is not set)
# ---------------------------------------------------------------------------
# Every consumer of redis_pool checks for None and falls back to in-memory.

if SETTINGS.redis_url:
    redis_pool: aioredis.Redis | None = aioredis.from_url(  # type: ignore[type-arg]
        SETTINGS.redis_url,
        decode_responses=True,  # return str instead of bytes
        max_connections=20,
    )
else:
    redis_pool = None


@asynccontextmanager
async def lifespan_redis():
    """Startup/shutdown hook for Redis.

    Verifies the connection on startup and releases the pool on
    shutdown.  A failed ping is logged, not raised: the in-memory
    fallbacks only cover a single process, but that is still better
    than refusing to start.
    """
    if redis_pool is None:
        logger.info("No REDIS_URL configured, session sync uses in-memory fallbacks")
        yield
        return

    try:
        await redis_pool.ping()  # type: ignore[misc]  # redis stubs mistype async ping as bool
        logger.info("Redis connected: %s", SETTINGS.redis_url)
    except Exception:
        logger.exception("Redis connection failed on startup")
        yield
        return

    yield

    await redis_pool.aclose()
    logger.info("Redis connection pool closed")
