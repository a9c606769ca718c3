"""
Redis-based distributed semaphore capping concurrent tasks per worker pool.

Uses a Redis sorted set (ZSET) where:
- key: sem:{pool}
- members: unique tokens (UUIDs)
- scores: expiry timestamps (unix epoch)

Celery `--concurrency` bounds a single worker; this bounds the pool across
every host. Expired tokens (crashed holders) are cleaned up on each acquire.
"""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator

import redis.asyncio as aioredis

from autopilot.settings import get_settings

logger = logging.getLogger(__name__)


def _sem_key(pool: str) -> str:
    return f"sem:{pool}"


async def acquire(
    r: aioredis.Redis,
    pool: str,
    limit: int,
    *,
    ttl_sec: int | None = None,
    wait_timeout_sec: int | None = None,
) -> str:
    """Take a slot of the pool semaphore.

    Returns:
        token string (must be passed to release())

    Raises:
        TimeoutError: if no slot frees up within wait_timeout_sec
    """
    settings = get_settings()
    if ttl_sec is None:
        ttl_sec = settings.redis_semaphore_ttl_sec
    if wait_timeout_sec is None:
        wait_timeout_sec = settings.semaphore_wait_timeout_sec

    key = _sem_key(pool)
    token = str(uuid.uuid4())
    deadline = time.monotonic() + wait_timeout_sec
    backoff = 0.5

    while True:
        now_ts = time.time()
        await r.zremrangebyscore(key, "-inf", now_ts)
        current = await r.zcard(key)

        if current < limit:
            added = await r.zadd(key, {token: now_ts + ttl_sec}, nx=True)
            if added:
                new_count = await r.zcard(key)
                if new_count > limit:
                    # lost the race
                    await r.zrem(key, token)
                else:
                    logger.debug(f"[semaphore] Acquired '{pool}' slot ({new_count}/{limit})")
                    return token

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise TimeoutError(
                f"Semaphore '{pool}': timed out waiting {wait_timeout_sec}s "
                f"for slot (limit={limit}, current={current})"
            )
        await asyncio.sleep(min(backoff, remaining))
        backoff = min(backoff * 1.5, 5.0)


async def release(r: aioredis.Redis, pool: str, token: str) -> None:
    removed = await r.zrem(_sem_key(pool), token)
    if not removed:
        logger.warning(
            f"[semaphore] Release '{pool}': token {token[:8]}… not found "
            f"(already expired or released)"
        )


@asynccontextmanager
async def pool_slot(r: aioredis.Redis, pool: str) -> AsyncIterator[str]:
    """Hold one slot of `pool` for the duration of the block."""
    token = await acquire(r, pool, get_settings().pool_concurrency(pool))
    try:
        yield token
    finally:
        await release(r, pool, token)
