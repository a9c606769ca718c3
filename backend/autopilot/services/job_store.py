"""
Job store: durable keyed JSON records with expiry.

Layout (Redis):
- batch_job:{id}, autopub_job:{id}, research_job:{id}  (TTL 2h)
- performance:{content_id}                              (TTL 30d)
- finetuning_dataset       LIST, newest first
- finetuning_dataset:keys  SET of dedupe keys for the list

Read-modify-write goes through `update()`, which is atomic per key:
RedisJobStore uses WATCH/MULTI/EXEC and retries on conflict,
InMemoryJobStore serializes per key with an asyncio.Lock.
An expired record is indistinguishable from a missing one.
"""
from __future__ import annotations

import abc
import asyncio
import json
import logging
import time
from collections import defaultdict
from typing import Any, Callable, TypeVar

import redis.asyncio as aioredis
from redis.exceptions import WatchError

from autopilot.errors import NotFoundError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# (record) -> (new_record, result)
Mutator = Callable[[dict[str, Any]], "tuple[dict[str, Any], T]"]

_APPEND_UNIQUE_LUA = """
if redis.call('SADD', KEYS[2], ARGV[1]) == 1 then
  redis.call('LPUSH', KEYS[1], ARGV[2])
  return 1
end
return 0
"""


def _dumps(record: dict[str, Any]) -> str:
    return json.dumps(record, ensure_ascii=False, default=str)


class JobStore(abc.ABC):
    """Keyed record storage with TTL and atomic updates."""

    @abc.abstractmethod
    async def get(self, key: str) -> dict[str, Any] | None:
        ...

    @abc.abstractmethod
    async def set(self, key: str, record: dict[str, Any], ttl_sec: int) -> None:
        ...

    @abc.abstractmethod
    async def update(self, key: str, mutate: Mutator, ttl_sec: int) -> Any:
        """Atomically apply `mutate` to the record and write it back.

        Bumps record["version"] on every write.

        Raises:
            NotFoundError: if the record is missing or expired
        """
        ...

    @abc.abstractmethod
    async def append_unique(self, list_key: str, dedupe_key: str, record: dict[str, Any]) -> bool:
        """Prepend `record` to an append-only list unless `dedupe_key` was seen.

        Returns True if the record was added.
        """
        ...

    @abc.abstractmethod
    async def list_range(self, list_key: str, start: int, stop: int) -> list[dict[str, Any]]:
        """Return list items start..stop inclusive (newest first)."""
        ...

    async def ping(self) -> bool:
        return True


class RedisJobStore(JobStore):
    def __init__(self, client: aioredis.Redis, *, max_update_retries: int = 25):
        self._redis = client
        self._max_update_retries = max_update_retries
        self._append_unique = client.register_script(_APPEND_UNIQUE_LUA)

    @classmethod
    def from_url(cls, url: str) -> "RedisJobStore":
        return cls(aioredis.from_url(url, decode_responses=True))

    async def get(self, key: str) -> dict[str, Any] | None:
        raw = await self._redis.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    async def set(self, key: str, record: dict[str, Any], ttl_sec: int) -> None:
        await self._redis.set(key, _dumps(record), ex=ttl_sec)

    async def update(self, key: str, mutate: Mutator, ttl_sec: int) -> Any:
        for attempt in range(self._max_update_retries):
            async with self._redis.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    if raw is None:
                        raise NotFoundError(f"{key} not found or expired")
                    record = json.loads(raw)
                    new_record, result = mutate(record)
                    new_record["version"] = int(record.get("version") or 0) + 1
                    pipe.multi()
                    pipe.set(key, _dumps(new_record), ex=ttl_sec)
                    await pipe.execute()
                    return result
                except WatchError:
                    logger.debug(f"[job_store] Write conflict on {key} (attempt {attempt + 1}), retrying")
                    continue
        raise RuntimeError(f"[job_store] Gave up updating {key} after {self._max_update_retries} conflicts")

    async def append_unique(self, list_key: str, dedupe_key: str, record: dict[str, Any]) -> bool:
        added = await self._append_unique(
            keys=[list_key, f"{list_key}:keys"],
            args=[dedupe_key, _dumps(record)],
        )
        return bool(added)

    async def list_range(self, list_key: str, start: int, stop: int) -> list[dict[str, Any]]:
        items = await self._redis.lrange(list_key, start, stop)
        return [json.loads(item) for item in items]

    async def ping(self) -> bool:
        return bool(await self._redis.ping())


class InMemoryJobStore(JobStore):
    """Process-local store for tests and single-process runs.

    Records are kept serialized so callers never share mutable state.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._records: dict[str, tuple[str, float]] = {}
        self._lists: dict[str, list[str]] = defaultdict(list)
        self._seen: dict[str, set[str]] = defaultdict(set)
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def _load(self, key: str) -> dict[str, Any] | None:
        entry = self._records.get(key)
        if entry is None:
            return None
        raw, expires_at = entry
        if self._clock() >= expires_at:
            del self._records[key]
            return None
        return json.loads(raw)

    async def get(self, key: str) -> dict[str, Any] | None:
        return self._load(key)

    async def set(self, key: str, record: dict[str, Any], ttl_sec: int) -> None:
        self._records[key] = (_dumps(record), self._clock() + ttl_sec)

    async def update(self, key: str, mutate: Mutator, ttl_sec: int) -> Any:
        async with self._locks[key]:
            record = self._load(key)
            if record is None:
                raise NotFoundError(f"{key} not found or expired")
            new_record, result = mutate(record)
            new_record["version"] = int(record.get("version") or 0) + 1
            self._records[key] = (_dumps(new_record), self._clock() + ttl_sec)
            return result

    async def append_unique(self, list_key: str, dedupe_key: str, record: dict[str, Any]) -> bool:
        async with self._locks[list_key]:
            if dedupe_key in self._seen[list_key]:
                return False
            self._seen[list_key].add(dedupe_key)
            self._lists[list_key].insert(0, _dumps(record))
            return True

    async def list_range(self, list_key: str, start: int, stop: int) -> list[dict[str, Any]]:
        items = self._lists.get(list_key, [])
        end = None if stop == -1 else stop + 1
        return [json.loads(item) for item in items[start:end]]
