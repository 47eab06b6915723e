"""
Composition root: builds every component from settings and owns their lifecycle.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

import httpx

from brawlsync import __version__
from brawlsync.core.background_tasks import SweepTimer
from brawlsync.core.config import SyncSettings
from brawlsync.core.cursors import CursorStore
from brawlsync.core.db import close_db, get_db
from brawlsync.core.errors import StoreUnavailableError
from brawlsync.core.gateway import RemoteApiGateway
from brawlsync.core.lock import DistributedLock
from brawlsync.core.mongo_repository import MongoRepository
from brawlsync.core.repository import Repository
from brawlsync.core.store import RedisStore, SharedStore, create_store
from brawlsync.jobs.sweep import SweepScheduler
from brawlsync.refresh.backfill import Backfill
from brawlsync.refresh.consumer import RefreshConsumer
from brawlsync.refresh.queue import MemoryQueueStore, QueueStore, RedisQueueStore, RefreshQueue
from brawlsync.services.lookup import ClanLookupService, PlayerLookupService
from brawlsync.utils.logger import get_logger
from brawlsync.utils.rate_limiter import TokenBudgetLimiter

log = get_logger(__name__)


class SyncRuntime:
    def __init__(
        self,
        *,
        settings: SyncSettings,
        store: SharedStore,
        queue_store: QueueStore,
        repository: Repository,
        limiter: TokenBudgetLimiter,
        gateway: RemoteApiGateway,
        cursors: CursorStore,
        queue: RefreshQueue,
        sweep: SweepScheduler,
        consumer: RefreshConsumer,
        lookup: PlayerLookupService,
        clans: ClanLookupService,
    ) -> None:
        self.settings = settings
        self.store = store
        self.queue_store = queue_store
        self.repository = repository
        self.limiter = limiter
        self.gateway = gateway
        self.cursors = cursors
        self.queue = queue
        self.sweep = sweep
        self.consumer = consumer
        self.lookup = lookup
        self.clans = clans
        self.timer = SweepTimer(sweep.tick, settings.sweep.tick_interval)

    async def start(self) -> None:
        """Start the sweep timer and the refresh worker pool."""
        self.timer.start()
        self.consumer.start()
        log.info(f"brawlsync {__version__} worker running")

    async def stop(self) -> None:
        await self.timer.stop()
        await self.consumer.stop()
        await self.close()

    async def close(self) -> None:
        await self.gateway.close()
        await self.store.close()
        if isinstance(self.repository, MongoRepository):
            await close_db()

    async def health(self) -> Dict[str, Any]:
        database = "ok" if await self.repository.ping() else "unreachable"
        try:
            remaining = await self.limiter.remaining()
            backlog = await self.queue.backlog()
        except StoreUnavailableError as exc:
            return {
                "status": "degraded",
                "store": exc.message,
                "database": database,
                "budget_remaining": None,
                "backlog": None,
            }
        return {
            "status": "healthy" if database == "ok" else "degraded",
            "store": "ok",
            "database": database,
            "budget_remaining": remaining,
            "backlog": backlog,
        }

    async def status(self) -> Dict[str, Any]:
        sweep = self.settings.sweep
        cursors = await self.cursors.snapshot(
            sweep.brackets, self.sweep.scopes, sweep.regions, sweep.regional_max_page
        )
        last = self.sweep.last_report
        return {
            "limiter": self.limiter.get_stats(),
            "cursors": cursors,
            "backlog": await self.queue.backlog(),
            "consumer": dict(self.consumer.counters),
            "last_tick": last.to_dict() if last else None,
        }


def build_runtime(
    settings: SyncSettings,
    *,
    store: Optional[SharedStore] = None,
    queue_store: Optional[QueueStore] = None,
    repository: Optional[Repository] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> SyncRuntime:
    """Wire the worker from settings; any collaborator can be injected instead."""
    store = store or create_store(settings.redis_url)
    if queue_store is None:
        claim_timeout = settings.refresh.claim_timeout
        if isinstance(store, RedisStore):
            queue_store = RedisQueueStore(store, claim_timeout=claim_timeout)
        else:
            queue_store = MemoryQueueStore(claim_timeout=claim_timeout)
    if repository is None:
        repository = MongoRepository(get_db(settings.mongo_db, settings.mongo_uri))

    lim = settings.limiter
    limiter = TokenBudgetLimiter(
        store,
        key=lim.key,
        capacity=lim.capacity,
        refill_interval=lim.refill_interval,
        min_spacing=lim.min_spacing,
        backoff_base=lim.backoff_base,
        max_backoff=lim.max_backoff,
    )
    gateway = RemoteApiGateway(
        limiter,
        api_key=settings.api_key,
        base_url=settings.api_base_url,
        timeout=settings.request_timeout,
        max_throttle_retries=lim.max_throttle_retries,
        max_transient_retries=lim.max_transient_retries,
        transient_retry_delay=lim.transient_retry_delay,
        transport=transport,
    )

    sweep_settings = settings.sweep
    lock = DistributedLock(store, sweep_settings.lock_key, sweep_settings.lock_ttl, sweep_settings.lock_heartbeat)
    cursors = CursorStore(store)
    queue = RefreshQueue(queue_store)
    backfill = Backfill(repository, queue, settings.backfill)
    sweep = SweepScheduler(
        gateway=gateway,
        repository=repository,
        store=store,
        lock=lock,
        cursors=cursors,
        settings=sweep_settings,
        backfill=backfill,
    )
    consumer = RefreshConsumer(queue_store, gateway, repository, settings.refresh)
    lookup = PlayerLookupService(repository, queue, gateway, settings.refresh)
    clans = ClanLookupService(repository, gateway)

    return SyncRuntime(
        settings=settings,
        store=store,
        queue_store=queue_store,
        repository=repository,
        limiter=limiter,
        gateway=gateway,
        cursors=cursors,
        queue=queue,
        sweep=sweep,
        consumer=consumer,
        lookup=lookup,
        clans=clans,
    )


__all__ = ["SyncRuntime", "build_runtime"]
