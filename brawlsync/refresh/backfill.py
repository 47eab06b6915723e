"""Low-priority backfill of players whose detail records were never fetched."""

from __future__ import annotations

from brawlsync.core.config import BackfillSettings
from brawlsync.core.repository import Repository
from brawlsync.refresh.budget import RefreshBudget
from brawlsync.refresh.queue import RefreshQueue
from brawlsync.utils.logger import get_logger

log = get_logger(__name__)


class Backfill:
    def __init__(self, repository: Repository, queue: RefreshQueue, settings: BackfillSettings) -> None:
        self.repository = repository
        self.queue = queue
        self.settings = settings

    async def run(self) -> int:
        """Enqueue up to ``batch_size`` jobs while the backlog stays under its ceiling; return how many."""
        backlog = await self.queue.backlog()
        if backlog >= self.settings.max_backlog:
            log.debug(f"[backfill] backlog {backlog} >= {self.settings.max_backlog}; skipping")
            return 0

        budget = RefreshBudget(self.settings.batch_size, backlog=backlog, ceiling=self.settings.max_backlog)
        candidates = await self.repository.find_backfill_candidates(self.settings.scan_limit)
        for candidate in candidates:
            for kind in candidate.missing:
                if not budget.allow():
                    break
                if await self.queue.enqueue(kind, candidate.brawlhalla_id, self.settings.priority):
                    budget.consume()
            if not budget.allow():
                break

        if budget.spent:
            log.info(f"[backfill] queued {budget.spent} jobs from {len(candidates)} candidates")
        return budget.spent


__all__ = ["Backfill"]
