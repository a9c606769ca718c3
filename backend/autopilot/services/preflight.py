"""
Health checks: job store, database, destination sites, delayed queues.

Results are cached for 60 seconds to avoid hammering dependencies.
"""
from __future__ import annotations

import logging
import time
from typing import Any, Callable

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from autopilot.services.job_store import JobStore
from autopilot.services.routing import SiteRegistry
from autopilot.services.task_queue import TaskQueue

logger = logging.getLogger(__name__)

_cache: dict[str, Any] = {}
_cache_ts: float = 0.0
CACHE_TTL = 60  # seconds

CAPABILITIES = {
    "batch_generation": True,
    "automated_publishing": True,
    "performance_tracking": True,
    "fine_tuning_dataset": True,
}


async def _check_store(store: JobStore) -> dict:
    try:
        pong = await store.ping()
        return {"check": "job_store", "ok": bool(pong), "detail": "pong" if pong else "no pong"}
    except Exception as e:
        return {"check": "job_store", "ok": False, "detail": str(e)[:200]}


async def _check_db(engine: AsyncEngine) -> dict:
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return {"check": "db", "ok": True, "detail": "connected"}
    except Exception as e:
        return {"check": "db", "ok": False, "detail": str(e)[:200]}


def _check_sites(registry: SiteRegistry) -> dict:
    stats = registry.get_publishing_stats()
    ok = stats["active_sites"] > 0
    return {
        "check": "sites",
        "ok": ok,
        "detail": f"{stats['active_sites']}/{stats['total_sites']} active, {stats['routing_rules']} rules",
    }


async def get_health_status(
    *,
    store: JobStore,
    queue: TaskQueue,
    registry: SiteRegistry,
    engine: AsyncEngine | None = None,
    use_cache: bool = True,
    clock: Callable[[], float] = time.monotonic,
) -> dict[str, Any]:
    """Run all checks, return cached result if fresh."""
    global _cache, _cache_ts

    now = clock()
    if use_cache and _cache and (now - _cache_ts) < CACHE_TTL:
        return _cache

    checks: list[dict] = [await _check_store(store)]
    if engine is not None:
        checks.append(await _check_db(engine))
    checks.append(_check_sites(registry))

    try:
        delayed = await queue.pending_delayed()
    except Exception as e:
        delayed = {}
        checks.append({"check": "delayed_queues", "ok": False, "detail": str(e)[:200]})

    all_ok = all(c["ok"] for c in checks)
    result = {
        "status": "healthy" if all_ok else "degraded",
        "ok": all_ok,
        "checks": checks,
        "delayed_tasks": delayed,
        "capabilities": CAPABILITIES,
        "cached_at": time.time(),
    }

    _cache = result
    _cache_ts = now

    if not all_ok:
        failed = [c for c in checks if not c["ok"]]
        logger.warning(f"[preflight] FAILED checks: {failed}")
    return result

