"""
Refresh Queue - durable priority queue of player refresh jobs
=============================================================

Jobs are keyed by ``refresh-<kind>-<id>`` so at most one job per target and
kind is ever pending. Lower priority values are served first, ties in
insertion order. Jobs that could not run for lack of budget are parked in a
delayed set and promoted back once their time comes. A claimed job carries a
deadline; if its worker neither finishes, defers nor fails it by then, the
next poll puts it back in the waiting set.
"""

from __future__ import annotations

import heapq
import itertools
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional, Tuple

from brawlsync.core.store import RedisStore
from brawlsync.models.job import JobState, RefreshJob, RefreshKind, clamp_priority, dedupe_key
from brawlsync.utils.logger import get_logger

log = get_logger(__name__)

_PRIORITY_SCALE = 1_000_000_000_000


class QueueStore(ABC):
    @abstractmethod
    async def add(self, job: RefreshJob) -> bool:
        """Store ``job`` unless a job with the same key exists."""

    @abstractmethod
    async def get(self, key: str) -> Optional[RefreshJob]: ...

    @abstractmethod
    async def remove(self, key: str) -> bool: ...

    @abstractmethod
    async def poll(self) -> Optional[RefreshJob]:
        """Promote due delayed jobs, then claim the most urgent waiting job."""

    @abstractmethod
    async def defer(self, job: RefreshJob, delay: float) -> None: ...

    @abstractmethod
    async def mark_failed(self, job: RefreshJob, error: str) -> None: ...

    @abstractmethod
    async def backlog(self) -> int:
        """Jobs waiting, delayed or active."""


class MemoryQueueStore(QueueStore):
    def __init__(self, clock: Optional[Callable[[], float]] = None, claim_timeout: float = 300.0) -> None:
        self._clock = clock or time.time
        self.claim_timeout = claim_timeout
        self._jobs: Dict[str, RefreshJob] = {}
        self._order: Dict[str, int] = {}
        self._waiting: List[Tuple[int, int, str]] = []
        self._seq = itertools.count(1)

    def _push(self, job: RefreshJob) -> None:
        heapq.heappush(self._waiting, (job.priority, self._order[job.key], job.key))

    async def add(self, job: RefreshJob) -> bool:
        if job.key in self._jobs:
            return False
        job.state = JobState.WAITING
        self._jobs[job.key] = job
        self._order[job.key] = next(self._seq)
        self._push(job)
        return True

    async def get(self, key: str) -> Optional[RefreshJob]:
        return self._jobs.get(key)

    async def remove(self, key: str) -> bool:
        self._order.pop(key, None)
        return self._jobs.pop(key, None) is not None

    async def poll(self) -> Optional[RefreshJob]:
        now = self._clock()
        for job in self._jobs.values():
            if job.state is JobState.ACTIVE and (job.claimed_until or 0) <= now:
                log.warning(f"[queue] {job.key} stalled past its claim; returning it to the queue")
                job.state = JobState.WAITING
                job.claimed_until = None
                self._push(job)
            elif job.state is JobState.DELAYED and (job.not_before or 0) <= now:
                job.state = JobState.WAITING
                job.not_before = None
                self._push(job)

        while self._waiting:
            _, seq, key = heapq.heappop(self._waiting)
            job = self._jobs.get(key)
            if job is None or job.state is not JobState.WAITING or self._order.get(key) != seq:
                continue
            job.state = JobState.ACTIVE
            job.claimed_until = now + self.claim_timeout
            return job
        return None

    async def defer(self, job: RefreshJob, delay: float) -> None:
        stored = self._jobs.get(job.key)
        if stored is None:
            return
        stored.state = JobState.DELAYED
        stored.not_before = self._clock() + delay
        stored.claimed_until = None

    async def mark_failed(self, job: RefreshJob, error: str) -> None:
        stored = self._jobs.get(job.key)
        if stored is None:
            return
        stored.state = JobState.FAILED
        stored.claimed_until = None
        stored.attempts = job.attempts
        stored.last_error = error

    async def backlog(self) -> int:
        return sum(1 for job in self._jobs.values() if job.state is not JobState.FAILED)


# -- Redis --------------------------------------------------------------------

LUA_QUEUE_ADD = """
if redis.call("EXISTS", KEYS[1]) == 1 then return 0 end
local seq = redis.call("INCR", KEYS[3])
redis.call("HSET", KEYS[1], unpack(ARGV, 3))
redis.call("HSET", KEYS[1], "seq", seq, "state", "waiting")
redis.call("ZADD", KEYS[2], tonumber(ARGV[2]) * %d + seq, ARGV[1])
return 1
""" % _PRIORITY_SCALE

LUA_QUEUE_POLL = """
local t = redis.call("TIME")
local now = tonumber(t[1]) * 1000 + math.floor(tonumber(t[2]) / 1000)
local stalled = redis.call("ZRANGEBYSCORE", KEYS[3], "-inf", now, "LIMIT", 0, 100)
for _, key in ipairs(stalled) do
  local h = ARGV[1] .. key
  redis.call("ZREM", KEYS[3], key)
  if redis.call("EXISTS", h) == 1 then
    local priority = tonumber(redis.call("HGET", h, "priority") or "100")
    local seq = tonumber(redis.call("HGET", h, "seq") or "0")
    redis.call("ZADD", KEYS[1], priority * %d + seq, key)
    redis.call("HSET", h, "state", "waiting", "claimed_until", "")
  end
end
local due = redis.call("ZRANGEBYSCORE", KEYS[2], "-inf", now, "LIMIT", 0, 100)
for _, key in ipairs(due) do
  local h = ARGV[1] .. key
  local priority = tonumber(redis.call("HGET", h, "priority") or "100")
  local seq = tonumber(redis.call("HGET", h, "seq") or "0")
  redis.call("ZREM", KEYS[2], key)
  redis.call("ZADD", KEYS[1], priority * %d + seq, key)
  redis.call("HSET", h, "state", "waiting", "not_before", "")
end
while true do
  local popped = redis.call("ZPOPMIN", KEYS[1])
  if #popped == 0 then return nil end
  local key = popped[1]
  local h = ARGV[1] .. key
  if redis.call("EXISTS", h) == 1 then
    local deadline = now + tonumber(ARGV[2])
    redis.call("ZADD", KEYS[3], deadline, key)
    redis.call("HSET", h, "state", "active", "claimed_until", deadline / 1000)
    return redis.call("HGETALL", h)
  end
end
""" % (_PRIORITY_SCALE, _PRIORITY_SCALE)

LUA_QUEUE_DEFER = """
local t = redis.call("TIME")
local now = tonumber(t[1]) * 1000 + math.floor(tonumber(t[2]) / 1000)
if redis.call("EXISTS", KEYS[1]) == 0 then return 0 end
local ready = now + tonumber(ARGV[2])
redis.call("ZREM", KEYS[3], ARGV[1])
redis.call("ZREM", KEYS[4], ARGV[1])
redis.call("ZADD", KEYS[2], ready, ARGV[1])
redis.call("HSET", KEYS[1], "state", "delayed", "not_before", ready / 1000, "claimed_until", "")
return 1
"""

LUA_QUEUE_FAIL = """
if redis.call("EXISTS", KEYS[1]) == 0 then return 0 end
redis.call("ZREM", KEYS[2], ARGV[1])
redis.call("ZREM", KEYS[3], ARGV[1])
redis.call("HSET", KEYS[1], "state", "failed", "attempts", ARGV[2], "last_error", ARGV[3], "claimed_until", "")
return 1
"""

LUA_QUEUE_REMOVE = """
redis.call("ZREM", KEYS[2], ARGV[1])
redis.call("ZREM", KEYS[3], ARGV[1])
redis.call("ZREM", KEYS[4], ARGV[1])
return redis.call("DEL", KEYS[1])
"""

LUA_QUEUE_GET = 'return redis.call("HGETALL", KEYS[1])'

LUA_QUEUE_BACKLOG = """
return redis.call("ZCARD", KEYS[1]) + redis.call("ZCARD", KEYS[2]) + redis.call("ZCARD", KEYS[3])
"""

_QUEUE_SCRIPTS = {
    "queue_add": LUA_QUEUE_ADD,
    "queue_poll": LUA_QUEUE_POLL,
    "queue_defer": LUA_QUEUE_DEFER,
    "queue_fail": LUA_QUEUE_FAIL,
    "queue_remove": LUA_QUEUE_REMOVE,
    "queue_get": LUA_QUEUE_GET,
    "queue_backlog": LUA_QUEUE_BACKLOG,
}


def _pairs_to_dict(flat) -> Dict[str, str]:
    if isinstance(flat, dict):
        return flat
    items = list(flat or [])
    return dict(zip(items[0::2], items[1::2]))


class RedisQueueStore(QueueStore):
    """Queue kept in Redis next to the limiter state, sharing its client and reconnect handling."""

    def __init__(self, store: RedisStore, prefix: str = "refresh-queue", claim_timeout: float = 300.0) -> None:
        self.store = store
        self.prefix = prefix
        self.claim_timeout = claim_timeout
        self.waiting_key = f"{prefix}:waiting"
        self.delayed_key = f"{prefix}:delayed"
        self.active_key = f"{prefix}:active"
        self.seq_key = f"{prefix}:seq"
        self.job_prefix = f"{prefix}:job:"
        for name, source in _QUEUE_SCRIPTS.items():
            store.register(name, source)

    def _job_key(self, key: str) -> str:
        return f"{self.job_prefix}{key}"

    async def add(self, job: RefreshJob) -> bool:
        fields: List[str] = []
        for name, value in job.to_hash().items():
            fields.extend([name, value])
        added = await self.store.run_script(
            "queue_add",
            [self._job_key(job.key), self.waiting_key, self.seq_key],
            [job.key, job.priority, *fields],
        )
        return int(added or 0) == 1

    async def get(self, key: str) -> Optional[RefreshJob]:
        data = _pairs_to_dict(await self.store.run_script("queue_get", [self._job_key(key)], []))
        return RefreshJob.from_dict(data) if data else None

    async def remove(self, key: str) -> bool:
        removed = await self.store.run_script(
            "queue_remove",
            [self._job_key(key), self.waiting_key, self.delayed_key, self.active_key],
            [key],
        )
        return int(removed or 0) == 1

    async def poll(self) -> Optional[RefreshJob]:
        data = await self.store.run_script(
            "queue_poll", [self.waiting_key, self.delayed_key, self.active_key],
            [self.job_prefix, max(int(self.claim_timeout * 1000), 1)],
        )
        data = _pairs_to_dict(data)
        return RefreshJob.from_dict(data) if data else None

    async def defer(self, job: RefreshJob, delay: float) -> None:
        await self.store.run_script(
            "queue_defer",
            [self._job_key(job.key), self.delayed_key, self.active_key, self.waiting_key],
            [job.key, max(int(delay * 1000), 0)],
        )

    async def mark_failed(self, job: RefreshJob, error: str) -> None:
        await self.store.run_script(
            "queue_fail",
            [self._job_key(job.key), self.active_key, self.waiting_key],
            [job.key, job.attempts, error],
        )

    async def backlog(self) -> int:
        return int(
            await self.store.run_script("queue_backlog", [self.waiting_key, self.delayed_key, self.active_key], [])
            or 0
        )


class RefreshQueue:
    """Submission side of the queue: idempotent enqueue with purge-on-failure."""

    def __init__(self, store: QueueStore) -> None:
        self.store = store

    async def enqueue(self, kind: RefreshKind, target_id: int, priority: int) -> bool:
        """
        Submit a refresh job.

        Returns ``True`` when a new job was stored. A pending job under the same
        key makes this a no-op; a failed one is purged and replaced.
        """
        job = RefreshJob.create(RefreshKind(kind), target_id, clamp_priority(priority))
        existing = await self.store.get(job.key)
        if existing is not None:
            if not existing.is_failed:
                log.debug(f"[queue] {job.key} already {existing.state.value}; skipping")
                return False
            await self.store.remove(job.key)
            log.info(f"[queue] purged failed job {job.key} before resubmitting")

        added = await self.store.add(job)
        if added:
            log.debug(f"[queue] queued {job.key} priority={job.priority}")
        return added

    async def get(self, kind: RefreshKind, target_id: int) -> Optional[RefreshJob]:
        return await self.store.get(dedupe_key(kind, target_id))

    async def backlog(self) -> int:
        return await self.store.backlog()


__all__ = ["QueueStore", "MemoryQueueStore", "RedisQueueStore", "RefreshQueue"]
