"""
Refresh Consumer - bounded worker pool draining the refresh queue
=================================================================

Each job re-checks the remaining budget against its kind's threshold before
touching the provider. Jobs without enough budget are parked for later, jobs
that keep failing are retried with exponential backoff and then dropped.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Dict, List, Optional

from tenacity import AsyncRetrying, retry_if_not_exception_type, stop_after_attempt, wait_exponential

from brawlsync.core.config import RefreshSettings
from brawlsync.core.errors import JobRetryExhaustedError, RemoteNotFoundError, StoreUnavailableError
from brawlsync.core.gateway import RemoteApiGateway
from brawlsync.core.repository import Repository
from brawlsync.core.snapshots import apply_ranked_refresh, apply_stats_refresh
from brawlsync.models.job import RefreshJob, RefreshKind
from brawlsync.refresh.queue import QueueStore
from brawlsync.utils.logger import get_logger

log = get_logger(__name__)

Handler = Callable[[int], Awaitable[None]]

DONE = "done"
DEFERRED = "deferred"
FAILED = "failed"


class RefreshConsumer:
    def __init__(
        self,
        store: QueueStore,
        gateway: RemoteApiGateway,
        repository: Repository,
        settings: RefreshSettings,
        handlers: Optional[Dict[RefreshKind, Handler]] = None,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.repository = repository
        self.settings = settings
        self.handlers: Dict[RefreshKind, Handler] = handlers or {
            RefreshKind.RANKED: self.refresh_ranked,
            RefreshKind.STATS: self.refresh_stats,
        }
        self.counters = {DONE: 0, DEFERRED: 0, FAILED: 0}
        self._workers: List[asyncio.Task] = []
        self._stop: Optional[asyncio.Event] = None

    # -- handlers --

    async def refresh_ranked(self, brawlhalla_id: int) -> None:
        data = await self.gateway.get_player_ranked(brawlhalla_id)
        await apply_ranked_refresh(self.repository, brawlhalla_id, data)

    async def refresh_stats(self, brawlhalla_id: int) -> None:
        data = await self.gateway.get_player_stats(brawlhalla_id)
        await apply_stats_refresh(self.repository, brawlhalla_id, data)

    def min_tokens(self, kind: RefreshKind) -> int:
        if RefreshKind(kind) is RefreshKind.RANKED:
            return self.settings.ranked_min_tokens
        return self.settings.stats_min_tokens

    # -- processing --

    async def process(self, job: RefreshJob) -> str:
        """Run one claimed job to a terminal outcome: done, deferred or failed."""
        try:
            remaining = await self.gateway.remaining_budget()
        except StoreUnavailableError as exc:
            log.warning(f"[refresh] budget unknown for {job.key} ({exc.message}); deferring")
            return await self._defer(job)

        needed = self.min_tokens(job.kind)
        if remaining < needed:
            log.warning(f"[refresh] delaying {job.key}: {remaining} tokens < {needed}")
            return await self._defer(job)

        handler = self.handlers[job.kind]
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.settings.max_attempts),
                wait=wait_exponential(multiplier=self.settings.retry_backoff),
                retry=retry_if_not_exception_type((RemoteNotFoundError, StoreUnavailableError)),
                reraise=True,
            ):
                with attempt:
                    job.attempts = attempt.retry_state.attempt_number
                    await handler(job.target_id)
        except StoreUnavailableError as exc:
            log.warning(f"[refresh] store unavailable while running {job.key} ({exc.message}); deferring")
            return await self._defer(job)
        except Exception as exc:  # noqa: BLE001
            error = JobRetryExhaustedError(
                f"{job.key} failed after {job.attempts} attempt(s): {exc}", job_key=job.key, attempts=job.attempts
            )
            log.error(f"[refresh] {error.as_dict()}")
            await self.store.mark_failed(job, str(exc))
            if self.settings.remove_on_fail:
                await self.store.remove(job.key)
            self.counters[FAILED] += 1
            return FAILED

        await self.store.remove(job.key)
        self.counters[DONE] += 1
        log.debug(f"[refresh] {job.key} done")
        return DONE

    async def _defer(self, job: RefreshJob) -> str:
        try:
            await self.store.defer(job, self.settings.defer_delay)
        except StoreUnavailableError as exc:
            log.error(f"[refresh] could not park {job.key} ({exc.message}); it returns when its claim expires")
        self.counters[DEFERRED] += 1
        return DEFERRED

    async def drain(self, limit: Optional[int] = None) -> int:
        """Process jobs one after another until the queue is empty or ``limit`` is reached."""
        handled = 0
        while limit is None or handled < limit:
            job = await self.store.poll()
            if job is None:
                break
            await self.process(job)
            handled += 1
        return handled

    # -- worker pool --

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._workers)

    def start(self) -> None:
        if self.running:
            return
        self._stop = asyncio.Event()
        self._workers = [
            asyncio.create_task(self._work(index), name=f"refresh-worker-{index}")
            for index in range(self.settings.concurrency)
        ]
        log.info(f"[refresh] started {self.settings.concurrency} workers")

    async def stop(self) -> None:
        if self._stop is not None:
            self._stop.set()
        if self._workers:
            await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        log.info("[refresh] workers stopped")

    async def _work(self, index: int) -> None:
        while not self._stop.is_set():
            try:
                job = await self.store.poll()
                if job is None:
                    await self._idle()
                    continue
                await self.process(job)
            except StoreUnavailableError as exc:
                log.error(f"[refresh] worker {index}: queue store unavailable: {exc.message}")
                await self._idle()

    async def _idle(self) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=self.settings.poll_interval)
        except asyncio.TimeoutError:
            pass


__all__ = ["RefreshConsumer", "DONE", "DEFERRED", "FAILED"]
