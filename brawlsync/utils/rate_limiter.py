"""
Rate Limiter - Shared Token Budget
==================================

Cluster-wide request budget for the provider API:
- Reservoir refilled to capacity at fixed interval boundaries
- Minimum spacing between any two dispatches, across every process
- One request in flight per limiter instance
- Exponential backoff (or the server's Retry-After) after throttling

The reservoir itself lives in a :class:`~brawlsync.core.store.SharedStore`,
so every worker process draws from the same budget.
"""

import asyncio
from typing import Any, Awaitable, Callable, Optional

from brawlsync.core.errors import StoreUnavailableError
from brawlsync.core.store import SharedStore, TokenGrant
from brawlsync.utils.logger import get_logger

log = get_logger(__name__)


class TokenBudgetLimiter:
    """
    Token budget limiter backed by the shared store

    Example:
        >>> limiter = TokenBudgetLimiter(store, capacity=180, refill_interval=900, min_spacing=0.1)
        >>> data = await limiter.schedule(client.get, "/player/1/ranked")
    """

    def __init__(
        self,
        store: SharedStore,
        *,
        key: str = "bhapi-limiter",
        capacity: int = 180,
        refill_interval: float = 900.0,
        min_spacing: float = 0.1,
        backoff_base: float = 1.0,
        max_backoff: float = 60.0,
        reconnect_delay: float = 1.0,
    ):
        """
        Initialize limiter

        Args:
            store: Shared store holding the reservoir
            key: Store key of the reservoir
            capacity: Calls allowed per refill interval
            refill_interval: Seconds between full refills
            min_spacing: Minimum seconds between two dispatches
            backoff_base: Base of the exponential throttling backoff
            max_backoff: Upper bound of the computed backoff
            reconnect_delay: Seconds to wait before re-creating a lost store connection
        """
        self.store = store
        self.key = key
        self.capacity = capacity
        self.refill_interval = refill_interval
        self.min_spacing = min_spacing
        self.backoff_base = backoff_base
        self.max_backoff = max_backoff
        self.reconnect_delay = reconnect_delay

        self.last_remaining: Optional[int] = None
        self.throttled_count = 0
        self._dispatch_lock = asyncio.Lock()
        self._depleted = False
        self._recovering = False
        self._reconnect_task: Optional[asyncio.Task] = None

        log.info(
            f"TokenBudgetLimiter initialized: {capacity} calls per {refill_interval:.0f}s, "
            f"{min_spacing * 1000:.0f}ms spacing"
        )

    async def try_acquire(self) -> TokenGrant:
        """Take one token if spacing and budget allow, otherwise report the wait."""
        try:
            grant = await self.store.acquire_token(self.key, self.capacity, self.refill_interval, self.min_spacing)
        except StoreUnavailableError:
            self._schedule_reconnect()
            raise

        self.last_remaining = grant.remaining
        if grant.granted and grant.remaining == 0:
            if not self._depleted:
                log.warning(f"Request budget depleted; next refill within {self.refill_interval:.0f}s")
            self._depleted = True
        elif grant.remaining > 0:
            self._depleted = False
        return grant

    async def acquire(self) -> int:
        """
        Wait until a token is granted

        Returns:
            Tokens left in the reservoir after this grant
        """
        while True:
            grant = await self.try_acquire()
            if grant.granted:
                log.debug(f"Token acquired, {grant.remaining} remaining")
                return grant.remaining
            await asyncio.sleep(max(grant.wait, 0.001))

    async def schedule(self, fn: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Acquire a token and run ``fn`` with no other dispatch from this limiter in flight."""
        async with self._dispatch_lock:
            await self.acquire()
            return await fn(*args, **kwargs)

    async def remaining(self) -> int:
        try:
            tokens = await self.store.peek_tokens(self.key, self.capacity, self.refill_interval)
        except StoreUnavailableError:
            self._schedule_reconnect()
            raise
        self.last_remaining = tokens
        return tokens

    def backoff_delay(self, attempt: int) -> float:
        return min(self.backoff_base * (2 ** max(attempt, 0)), self.max_backoff)

    async def report_throttled(self, retry_after: Optional[float] = None, attempt: int = 0) -> float:
        """
        Push every future grant back after the provider answered 429

        Args:
            retry_after: Server hint in seconds, preferred when present
            attempt: Zero-based retry attempt used for the exponential fallback

        Returns:
            Delay applied, in seconds
        """
        if retry_after is not None and retry_after > 0:
            delay = float(retry_after)
        else:
            delay = self.backoff_delay(attempt)
        self.throttled_count += 1
        try:
            await self.store.penalize(self.key, delay)
        except StoreUnavailableError:
            self._schedule_reconnect()
            raise
        log.warning(f"Provider throttled request (attempt {attempt + 1}); backing off {delay:.2f}s")
        return delay

    def _schedule_reconnect(self) -> None:
        if self._recovering:
            return
        self._recovering = True
        log.warning(f"Limiter store unreachable; reconnecting in {self.reconnect_delay:.1f}s")
        self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect())

    async def _reconnect(self) -> None:
        try:
            await asyncio.sleep(self.reconnect_delay)
            await self.store.reconnect()
            log.info("Limiter store connection re-created")
        except Exception as exc:  # noqa: BLE001
            log.error(f"Limiter store reconnect failed: {exc}")
        finally:
            self._recovering = False

    @property
    def recovering(self) -> bool:
        return self._recovering

    def get_stats(self) -> dict:
        """
        Get limiter statistics

        Returns:
            Dictionary with configuration and last known state
        """
        return {
            "key": self.key,
            "capacity": self.capacity,
            "refill_interval_seconds": self.refill_interval,
            "min_spacing_seconds": self.min_spacing,
            "last_remaining": self.last_remaining,
            "throttled_count": self.throttled_count,
            "recovering": self._recovering,
        }
