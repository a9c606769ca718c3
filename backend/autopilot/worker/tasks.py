"""
Celery tasks for the worker pools.

- generation.process_task:     one GenerationTask of a batch job
- publishing.process_task:     one content item of a publishing job
- tracking.track_performance:  one performance checkpoint (24h / 7d / 30d)
- queue.promote_due:           beat task, moves due delayed entries onto their queues

Each task runs its async body in a new event loop with asyncio.run(), builds
its own service set, and holds a slot of its pool's Redis semaphore.
Transient errors are retried by Celery with exponential backoff; on the last
attempt the orchestrator records them as failures instead of raising. Any
other exception escaping a generation or publishing task is recorded on its
job as that task's failure before it is re-raised.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

import redis.asyncio as aioredis

from autopilot.errors import TransientError
from autopilot.services.container import Services, build_services
from autopilot.services.redis_semaphore import pool_slot
from autopilot.services.task_queue import (
    POOL_GENERATION,
    POOL_PUBLISHING,
    POOL_TRACKING,
    POOLS,
    TASK_GENERATE,
    TASK_PUBLISH,
    TASK_TRACK,
    CeleryTaskQueue,
)
from autopilot.settings import get_settings
from autopilot.worker.celery_app import celery_app

logger = logging.getLogger(__name__)

MAX_RETRIES = max(get_settings().task_max_attempts - 1, 0)

_RETRY_OPTIONS: dict[str, Any] = {
    "bind": True,
    "autoretry_for": (TransientError,),
    "retry_backoff": True,
    "retry_backoff_max": 600,
    "retry_jitter": True,
    "max_retries": MAX_RETRIES,
}


def _is_final_attempt(task) -> bool:
    return task.request.retries >= task.max_retries


async def _run_in_pool(
    pool: str,
    body: Callable[[Services], Awaitable[dict]],
    on_failure: Callable[[Services, Exception], Awaitable[dict]] | None = None,
    final: bool = True,
) -> dict:
    services = build_services()
    try:
        async with pool_slot(services.redis, pool):
            return await body(services)
    except Exception as e:
        # transient errors on a non-final attempt go back to Celery for retry
        if on_failure is not None and (final or not isinstance(e, TransientError)):
            try:
                await on_failure(services, e)
            except Exception as e2:
                logger.error(f"[worker] Failed to record failure on '{pool}': {e2}")
        raise
    finally:
        await services.aclose()


@celery_app.task(name=TASK_GENERATE, queue=POOL_GENERATION, **_RETRY_OPTIONS)
def process_generation_task(self, batch_job_id: str, task_id: str) -> dict:
    final = _is_final_attempt(self)
    logger.info(f"[worker] Generation {task_id} (attempt={self.request.retries + 1}, final={final})")
    try:
        return asyncio.run(_run_in_pool(
            POOL_GENERATION,
            lambda s: s.batch.process_content_generation(batch_job_id, task_id, final_attempt=final),
            lambda s, e: s.batch.fail_task(batch_job_id, task_id, e),
            final,
        ))
    except Exception as e:
        logger.error(f"[worker] Generation {task_id} error (attempt {self.request.retries + 1}): {e}")
        raise


@celery_app.task(name=TASK_PUBLISH, queue=POOL_PUBLISHING, **_RETRY_OPTIONS)
def process_publishing_task(self, job_id: str, task_id: str, content_id: str) -> dict:
    final = _is_final_attempt(self)
    logger.info(f"[worker] Publish {task_id} content={content_id} (attempt={self.request.retries + 1}, final={final})")
    try:
        return asyncio.run(_run_in_pool(
            POOL_PUBLISHING,
            lambda s: s.publishing.process_content_publishing(job_id, task_id, content_id, final_attempt=final),
            lambda s, e: s.publishing.fail_task(job_id, task_id, content_id, e),
            final,
        ))
    except Exception as e:
        logger.error(f"[worker] Publish {task_id} error (attempt {self.request.retries + 1}): {e}")
        raise


@celery_app.task(name=TASK_TRACK, queue=POOL_TRACKING, **_RETRY_OPTIONS)
def track_performance_task(self, content_id: str, external_post_id: str, period: str) -> dict:
    logger.info(f"[worker] Tracking {content_id} ({period})")
    try:
        return asyncio.run(_run_in_pool(
            POOL_TRACKING,
            lambda s: s.tracker.track_content_performance(content_id, external_post_id, period),
        ))
    except Exception as e:
        logger.error(f"[worker] Tracking {content_id} ({period}) error: {e}")
        raise


async def _promote_all() -> dict[str, int]:
    settings = get_settings()
    client = aioredis.from_url(settings.redis_url, decode_responses=True)
    try:
        queue = CeleryTaskQueue(celery_app, client)
        return {pool: await queue.promote_due(pool, settings.delayed_promote_batch) for pool in POOLS}
    finally:
        await client.aclose()


@celery_app.task(name="queue.promote_due", ignore_result=True)
def promote_due_tasks() -> dict:
    return asyncio.run(_promote_all())
