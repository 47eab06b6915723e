"""
Shared Store - cross-process state for the budget, the sweep lock and cursors
==============================================================================

Every mutation is a single atomic step against the store: Redis runs each one
as a Lua script, the in-process store runs each one without yielding to the
event loop. Durations are given in seconds and stored as milliseconds.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from brawlsync.core.errors import StoreUnavailableError
from brawlsync.utils.logger import get_logger, mask_url

log = get_logger(__name__)


@dataclass(slots=True)
class TokenGrant:
    granted: bool
    remaining: int
    wait: float = 0.0


def _ms(seconds: float) -> int:
    return max(int(round(seconds * 1000)), 0)


class SharedStore(ABC):
    """Key-value store contract used by the limiter, lock and cursor store."""

    @abstractmethod
    async def set_if_absent(self, key: str, value: str, ttl: float) -> bool: ...

    @abstractmethod
    async def compare_and_extend(self, key: str, expected: str, ttl: float) -> bool: ...

    @abstractmethod
    async def compare_and_delete(self, key: str, expected: str) -> bool: ...

    @abstractmethod
    async def compare_and_set(self, key: str, expected: Optional[str], value: str) -> bool:
        """Write ``value`` only if the key still holds ``expected`` (``None`` = absent)."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]: ...

    @abstractmethod
    async def set(self, key: str, value: str) -> None: ...

    @abstractmethod
    async def incr(self, key: str, amount: int = 1) -> int: ...

    @abstractmethod
    async def acquire_token(self, key: str, capacity: int, interval: float, spacing: float) -> TokenGrant:
        """Take one token from the reservoir at ``key`` if spacing and budget allow."""

    @abstractmethod
    async def peek_tokens(self, key: str, capacity: int, interval: float) -> int: ...

    @abstractmethod
    async def penalize(self, key: str, delay: float) -> None:
        """Hold every grant on ``key`` back for at least ``delay`` seconds."""

    async def reconnect(self) -> None:
        return None

    async def close(self) -> None:
        return None


# -- Lua scripts -------------------------------------------------------------

_NOW_MS = """
local t = redis.call("TIME")
local now = tonumber(t[1]) * 1000 + math.floor(tonumber(t[2]) / 1000)
"""

_REFILL = """
local state = redis.call("HMGET", KEYS[1], "tokens", "window_start", "next_allowed")
local tokens = tonumber(state[1])
local window_start = tonumber(state[2])
local next_allowed = tonumber(state[3]) or 0
if tokens == nil or window_start == nil then
  tokens = capacity
  window_start = now
end
if now - window_start >= interval then
  window_start = window_start + math.floor((now - window_start) / interval) * interval
  tokens = capacity
end
if tokens > capacity then tokens = capacity end
"""

LUA_ACQUIRE = (
    """
local capacity = tonumber(ARGV[1])
local interval = tonumber(ARGV[2])
local spacing = tonumber(ARGV[3])
"""
    + _NOW_MS
    + _REFILL
    + """
local granted = 0
local wait = 0
if now < next_allowed then
  wait = next_allowed - now
elseif tokens <= 0 then
  wait = window_start + interval - now
else
  tokens = tokens - 1
  next_allowed = now + spacing
  granted = 1
end
redis.call("HSET", KEYS[1], "tokens", tokens, "window_start", window_start, "next_allowed", next_allowed)
return {granted, tokens, wait}
"""
)

LUA_PEEK = (
    """
local capacity = tonumber(ARGV[1])
local interval = tonumber(ARGV[2])
"""
    + _NOW_MS
    + _REFILL
    + """
return tokens
"""
)

LUA_PENALIZE = (
    _NOW_MS
    + """
local until_ms = now + tonumber(ARGV[1])
local current = tonumber(redis.call("HGET", KEYS[1], "next_allowed") or "0")
if until_ms > current then
  redis.call("HSET", KEYS[1], "next_allowed", until_ms)
end
return until_ms
"""
)

LUA_COMPARE_AND_EXTEND = (
    'if redis.call("get", KEYS[1]) == ARGV[1] then '
    'return redis.call("pexpire", KEYS[1], ARGV[2]) else return 0 end'
)

LUA_COMPARE_AND_DELETE = (
    'if redis.call("get", KEYS[1]) == ARGV[1] then '
    'return redis.call("del", KEYS[1]) else return 0 end'
)

LUA_COMPARE_AND_SET = """
local current = redis.call("GET", KEYS[1])
if ARGV[3] == "1" then
  if current then return 0 end
elseif current ~= ARGV[1] then
  return 0
end
redis.call("SET", KEYS[1], ARGV[2])
return 1
"""

_SCRIPTS: Dict[str, str] = {
    "acquire": LUA_ACQUIRE,
    "peek": LUA_PEEK,
    "penalize": LUA_PENALIZE,
    "compare_and_extend": LUA_COMPARE_AND_EXTEND,
    "compare_and_delete": LUA_COMPARE_AND_DELETE,
    "compare_and_set": LUA_COMPARE_AND_SET,
}


class RedisStore(SharedStore):
    """Redis backed store shared by every worker process."""

    def __init__(self, url: str, *, client: Any = None, socket_timeout: float = 5.0) -> None:
        self.url = url
        self.socket_timeout = socket_timeout
        self._sources: Dict[str, str] = dict(_SCRIPTS)
        self._scripts: Dict[str, Any] = {}
        self._client = client if client is not None else self._create_client()
        log.info(f"RedisStore initialized at {mask_url(url)}")

    def _create_client(self):
        return aioredis.from_url(
            self.url,
            decode_responses=True,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
        )

    @property
    def client(self):
        return self._client

    def register(self, name: str, source: str) -> None:
        """Make an extra Lua script available to :meth:`run_script`."""
        self._sources[name] = source
        self._scripts.pop(name, None)

    async def run_script(self, name: str, keys: Sequence[str], args: Sequence[Any]) -> Any:
        script = self._scripts.get(name)
        if script is None:
            script = self._client.register_script(self._sources[name])
            self._scripts[name] = script
        return await self._guard(name, script(keys=list(keys), args=list(args)))

    async def _guard(self, operation: str, awaitable):
        try:
            return await awaitable
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise StoreUnavailableError(f"Redis unreachable during {operation}: {exc}", operation=operation) from exc

    async def set_if_absent(self, key: str, value: str, ttl: float) -> bool:
        result = await self._guard("set_if_absent", self._client.set(key, value, px=_ms(ttl), nx=True))
        return bool(result)

    async def compare_and_extend(self, key: str, expected: str, ttl: float) -> bool:
        result = await self.run_script("compare_and_extend", [key], [expected, _ms(ttl)])
        return int(result or 0) == 1

    async def compare_and_delete(self, key: str, expected: str) -> bool:
        result = await self.run_script("compare_and_delete", [key], [expected])
        return int(result or 0) == 1

    async def compare_and_set(self, key: str, expected: Optional[str], value: str) -> bool:
        absent_flag = "1" if expected is None else "0"
        result = await self.run_script("compare_and_set", [key], [expected or "", value, absent_flag])
        return int(result or 0) == 1

    async def get(self, key: str) -> Optional[str]:
        return await self._guard("get", self._client.get(key))

    async def set(self, key: str, value: str) -> None:
        await self._guard("set", self._client.set(key, value))

    async def incr(self, key: str, amount: int = 1) -> int:
        return int(await self._guard("incr", self._client.incrby(key, amount)))

    async def acquire_token(self, key: str, capacity: int, interval: float, spacing: float) -> TokenGrant:
        granted, remaining, wait_ms = await self.run_script(
            "acquire", [key], [int(capacity), _ms(interval), _ms(spacing)]
        )
        return TokenGrant(granted=int(granted) == 1, remaining=int(remaining), wait=int(wait_ms) / 1000.0)

    async def peek_tokens(self, key: str, capacity: int, interval: float) -> int:
        return int(await self.run_script("peek", [key], [int(capacity), _ms(interval)]))

    async def penalize(self, key: str, delay: float) -> None:
        await self.run_script("penalize", [key], [_ms(delay)])

    async def reconnect(self) -> None:
        old = self._client
        self._client = self._create_client()
        self._scripts.clear()
        try:
            await old.aclose()
        except Exception as exc:  # noqa: BLE001
            log.warning(f"Error closing previous Redis client: {exc}")
        log.warning(f"Redis client re-created for {mask_url(self.url)}")

    async def close(self) -> None:
        await self._client.aclose()


class MemoryStore(SharedStore):
    """
    Single-process store with the same semantics as :class:`RedisStore`.

    Used when no Redis URL is configured and by the test-suite. None of the
    methods await, so each call is atomic with respect to the event loop.
    """

    def __init__(self, clock: Optional[Callable[[], float]] = None) -> None:
        self._clock = clock or time.time
        self._values: Dict[str, Tuple[str, Optional[float]]] = {}
        self._buckets: Dict[str, Dict[str, float]] = {}

    def _now(self) -> float:
        return self._clock() * 1000.0

    def _read(self, key: str) -> Optional[str]:
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self._now() >= expires_at:
            del self._values[key]
            return None
        return value

    async def set_if_absent(self, key: str, value: str, ttl: float) -> bool:
        if self._read(key) is not None:
            return False
        self._values[key] = (value, self._now() + _ms(ttl))
        return True

    async def compare_and_extend(self, key: str, expected: str, ttl: float) -> bool:
        if self._read(key) != expected:
            return False
        self._values[key] = (expected, self._now() + _ms(ttl))
        return True

    async def compare_and_delete(self, key: str, expected: str) -> bool:
        if self._read(key) != expected:
            return False
        del self._values[key]
        return True

    async def compare_and_set(self, key: str, expected: Optional[str], value: str) -> bool:
        if self._read(key) != expected:
            return False
        self._values[key] = (value, None)
        return True

    async def get(self, key: str) -> Optional[str]:
        return self._read(key)

    async def set(self, key: str, value: str) -> None:
        self._values[key] = (value, None)

    async def incr(self, key: str, amount: int = 1) -> int:
        current = int(self._read(key) or 0) + amount
        self._values[key] = (str(current), None)
        return current

    def _refill(self, key: str, capacity: int, interval_ms: int) -> Dict[str, float]:
        now = self._now()
        state = self._buckets.setdefault(key, {"next_allowed": 0.0})
        if "tokens" not in state:
            state["tokens"] = capacity
            state["window_start"] = now
        if interval_ms > 0 and now - state["window_start"] >= interval_ms:
            windows = (now - state["window_start"]) // interval_ms
            state["window_start"] += windows * interval_ms
            state["tokens"] = capacity
        state["tokens"] = min(state["tokens"], capacity)
        return state

    async def acquire_token(self, key: str, capacity: int, interval: float, spacing: float) -> TokenGrant:
        interval_ms = _ms(interval)
        state = self._refill(key, capacity, interval_ms)
        now = self._now()
        if now < state["next_allowed"]:
            return TokenGrant(False, int(state["tokens"]), (state["next_allowed"] - now) / 1000.0)
        if state["tokens"] <= 0:
            return TokenGrant(False, 0, (state["window_start"] + interval_ms - now) / 1000.0)
        state["tokens"] -= 1
        state["next_allowed"] = now + _ms(spacing)
        return TokenGrant(True, int(state["tokens"]), 0.0)

    async def peek_tokens(self, key: str, capacity: int, interval: float) -> int:
        return int(self._refill(key, capacity, _ms(interval))["tokens"])

    async def penalize(self, key: str, delay: float) -> None:
        state = self._buckets.setdefault(key, {"next_allowed": 0.0})
        state["next_allowed"] = max(state["next_allowed"], self._now() + _ms(delay))

    def set_tokens(self, key: str, tokens: int) -> None:
        """Overwrite the reservoir level (admin/testing helper)."""
        state = self._buckets.setdefault(key, {"next_allowed": 0.0})
        state.setdefault("window_start", self._now())
        state["tokens"] = tokens


def create_store(redis_url: Optional[str]) -> SharedStore:
    if redis_url:
        return RedisStore(redis_url)
    log.warning("REDIS_URL not set; using in-process MemoryStore (single worker only)")
    return MemoryStore()


__all__ = ["TokenGrant", "SharedStore", "RedisStore", "MemoryStore", "create_store"]
