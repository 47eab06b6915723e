"""
Leaderboard sweep run on every scheduler tick.

One process at a time runs the sweep, guarded by the distributed lock. Each
tick syncs one hot-tier page per bracket, one cold-tier page per bracket every
Nth tick, one page of the regional rotation per bracket, then a bounded
backfill pass. Cursors move on before the fetch, so a page that keeps failing
is skipped on the next lap instead of stalling its tier.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from brawlsync.core.config import SweepSettings
from brawlsync.core.cursors import CursorStore, PageRange
from brawlsync.core.errors import LockLostError, StoreUnavailableError
from brawlsync.core.gateway import RemoteApiGateway
from brawlsync.core.lock import DistributedLock, LockLease
from brawlsync.core.repository import Repository
from brawlsync.core.snapshots import save_rankings_page
from brawlsync.core.store import SharedStore
from brawlsync.refresh.backfill import Backfill
from brawlsync.utils.logger import get_logger

log = get_logger(__name__)

SKIPPED = "skipped"
COMPLETED = "completed"
ABORTED = "aborted"

HOT_SCOPE = "hot"
COLD_SCOPE = "cold"


@dataclass(slots=True)
class TickReport:
    status: str
    reason: str = ""
    tick: Optional[int] = None
    pages_synced: int = 0
    pages_failed: int = 0
    backfill_enqueued: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class SweepScheduler:
    def __init__(
        self,
        *,
        gateway: RemoteApiGateway,
        repository: Repository,
        store: SharedStore,
        lock: DistributedLock,
        cursors: CursorStore,
        settings: SweepSettings,
        backfill: Optional[Backfill] = None,
        tick_key: str = "sweep:tick",
    ) -> None:
        self.gateway = gateway
        self.repository = repository
        self.store = store
        self.lock = lock
        self.cursors = cursors
        self.settings = settings
        self.backfill = backfill
        self.tick_key = tick_key
        self.hot_range = PageRange(*settings.hot_pages)
        self.cold_range = PageRange(*settings.cold_pages)
        self.last_report: Optional[TickReport] = None

    @property
    def scopes(self) -> Dict[str, PageRange]:
        return {HOT_SCOPE: self.hot_range, COLD_SCOPE: self.cold_range}

    async def tick(self) -> TickReport:
        report = await self._tick()
        self.last_report = report
        return report

    async def _tick(self) -> TickReport:
        try:
            tokens = await self.gateway.remaining_budget()
        except StoreUnavailableError as exc:
            log.warning(f"[sweep] budget store unavailable, skipping tick: {exc.message}")
            return TickReport(SKIPPED, "store unavailable")

        if tokens < self.settings.idle_min_tokens:
            log.debug(f"[sweep] sleeping: {tokens} tokens < {self.settings.idle_min_tokens}")
            return TickReport(SKIPPED, "budget below idle threshold")

        report = TickReport(COMPLETED)

        async def body(lease: LockLease) -> None:
            await self._sweep(lease, report, tokens)

        try:
            ran = await self.lock.run_exclusive(body)
        except StoreUnavailableError as exc:
            log.error(f"[sweep] store unavailable, aborting tick {report.tick}: {exc.message}")
            report.status, report.reason = ABORTED, "store unavailable"
            return report

        if not ran:
            return TickReport(SKIPPED, "lock busy")
        log.info(
            f"[sweep] tick {report.tick} {report.status}: {report.pages_synced} pages synced, "
            f"{report.pages_failed} failed, {report.backfill_enqueued} backfill jobs"
        )
        return report

    async def _sweep(self, lease: LockLease, report: TickReport, tokens: int) -> None:
        try:
            report.tick = await self.store.incr(self.tick_key)
            log.info(f"[sweep] tick {report.tick} started with {tokens} tokens")
            await lease.checkpoint()

            for bracket in self.settings.brackets:
                lease.ensure_held()
                page = await self.cursors.advance(bracket, HOT_SCOPE, self.hot_range)
                await self._sync_page(report, bracket, "all", page)
            await lease.checkpoint()

            if report.tick % self.settings.cold_every_ticks == 0:
                for bracket in self.settings.brackets:
                    lease.ensure_held()
                    page = await self.cursors.advance(bracket, COLD_SCOPE, self.cold_range)
                    await self._sync_page(report, bracket, "all", page)
                await lease.checkpoint()

            if self.settings.regions:
                for bracket in self.settings.brackets:
                    lease.ensure_held()
                    region, page = await self.cursors.advance_regional(
                        bracket, self.settings.regions, self.settings.regional_max_page
                    )
                    await self._sync_page(report, bracket, region, page)
                await lease.checkpoint()

            if self.backfill is not None:
                report.backfill_enqueued = await self._run_backfill()
        except LockLostError:
            report.status, report.reason = ABORTED, "lock lost"
            raise

    async def _sync_page(self, report: TickReport, bracket: str, region: str, page: int) -> None:
        try:
            rows = await self.gateway.get_rankings(bracket, region, page)
            saved = await save_rankings_page(self.repository, bracket, rows, region)
        except StoreUnavailableError:
            raise
        except Exception as exc:  # noqa: BLE001
            report.pages_failed += 1
            log.error(f"[sweep] failed {bracket}/{region} page {page}, moving on: {exc}")
            return
        report.pages_synced += 1
        log.info(f"[sweep] updated {saved} rows from {bracket}/{region} page {page}")

    async def _run_backfill(self) -> int:
        try:
            return await self.backfill.run()
        except StoreUnavailableError:
            raise
        except Exception as exc:  # noqa: BLE001
            log.error(f"[sweep] backfill pass failed: {exc}")
            return 0


__all__ = ["TickReport", "SweepScheduler", "SKIPPED", "COMPLETED", "ABORTED"]
