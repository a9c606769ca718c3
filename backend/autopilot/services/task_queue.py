"""
Task queue: dispatch of per-item work onto named worker pools.

Pools (one Celery queue each):
- generation:  content generation tasks
- publishing:  publish tasks
- tracking:    performance tracking checkpoints (+24h / +7d / +30d)

Zero-delay tasks go straight to Celery. Delayed tasks are parked in a Redis
sorted set `delayed:{pool}` scored by their not-before unix timestamp; the
beat task `queue.promote_due` moves due entries to Celery. Celery ETA is not
used because a +30d countdown would outlive the broker visibility timeout.

The dispatch id doubles as the Celery task_id (idempotency key).
"""
from __future__ import annotations

import abc
import json
import logging
import time
import uuid
from typing import Any, Callable

import redis.asyncio as aioredis
from celery import Celery

logger = logging.getLogger(__name__)

POOL_GENERATION = "generation"
POOL_PUBLISHING = "publishing"
POOL_TRACKING = "tracking"
POOLS = (POOL_GENERATION, POOL_PUBLISHING, POOL_TRACKING)

TASK_GENERATE = "generation.process_task"
TASK_PUBLISH = "publishing.process_task"
TASK_TRACK = "tracking.track_performance"

# Redis transport supports priorities 0..9, 0 is served first
MAX_QUEUE_PRIORITY = 9

_POP_DUE_LUA = """
local items = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1], 'LIMIT', 0, tonumber(ARGV[2]))
if #items > 0 then
  redis.call('ZREM', KEYS[1], unpack(items))
end
return items
"""


def delayed_key(pool: str) -> str:
    return f"delayed:{pool}"


def _check_pool(pool: str) -> None:
    if pool not in POOLS:
        raise ValueError(f"Unknown worker pool: {pool}")


class TaskQueue(abc.ABC):
    """Dispatches a named task with a JSON payload to a worker pool."""

    @abc.abstractmethod
    async def enqueue(
        self,
        pool: str,
        task_name: str,
        payload: dict[str, Any],
        *,
        delay_ms: int = 0,
        priority: int | None = None,
        idempotency_key: str | None = None,
    ) -> str:
        """Schedule the task. Returns the dispatch id."""
        ...

    async def pending_delayed(self) -> dict[str, int]:
        return {pool: 0 for pool in POOLS}


class CeleryTaskQueue(TaskQueue):
    def __init__(
        self,
        celery_app: Celery,
        client: aioredis.Redis,
        *,
        clock: Callable[[], float] = time.time,
    ):
        self._celery = celery_app
        self._redis = client
        self._clock = clock
        self._pop_due = client.register_script(_POP_DUE_LUA)

    def _send(self, pool: str, entry: dict[str, Any]) -> None:
        priority = entry.get("priority")
        options: dict[str, Any] = {"queue": pool, "task_id": entry["id"]}
        if priority is not None:
            options["priority"] = min(max(int(priority), 0), MAX_QUEUE_PRIORITY)
        self._celery.send_task(entry["task"], kwargs=entry["payload"], **options)

    async def enqueue(
        self,
        pool: str,
        task_name: str,
        payload: dict[str, Any],
        *,
        delay_ms: int = 0,
        priority: int | None = None,
        idempotency_key: str | None = None,
    ) -> str:
        _check_pool(pool)
        entry = {
            "id": idempotency_key or uuid.uuid4().hex,
            "task": task_name,
            "payload": payload,
            "priority": priority,
        }

        if delay_ms <= 0:
            self._send(pool, entry)
            logger.info(f"[queue] Sent {task_name} to '{pool}' (id={entry['id']})")
            return entry["id"]

        not_before = self._clock() + delay_ms / 1000.0
        await self._redis.zadd(delayed_key(pool), {json.dumps(entry, sort_keys=True): not_before})
        logger.info(
            f"[queue] Parked {task_name} on '{pool}' for {delay_ms}ms (id={entry['id']})"
        )
        return entry["id"]

    async def promote_due(self, pool: str, limit: int = 100) -> int:
        """Send every parked entry of `pool` whose not-before time has passed.

        The pop is atomic, so concurrent promoters never send an entry twice.
        When a send fails, that entry and the rest of the popped batch are
        parked again for the next sweep before the error propagates.
        """
        _check_pool(pool)
        items = list(await self._pop_due(keys=[delayed_key(pool)], args=[self._clock(), limit]) or [])
        sent = 0
        for index, raw in enumerate(items):
            entry = json.loads(raw)
            try:
                self._send(pool, entry)
            except Exception as e:
                unsent = items[index:]
                logger.error(
                    f"[queue] Failed to promote {entry.get('task')} (id={entry.get('id')}), "
                    f"re-parking {len(unsent)} entries on '{pool}': {e}"
                )
                now = self._clock()
                await self._redis.zadd(delayed_key(pool), {item: now for item in unsent})
                raise
            sent += 1
        if sent:
            logger.info(f"[queue] Promoted {sent} due task(s) on '{pool}'")
        return sent

    async def pending_delayed(self) -> dict[str, int]:
        return {pool: int(await self._redis.zcard(delayed_key(pool))) for pool in POOLS}
