"""
On-demand lookups that queue just-in-time refreshes.

Known records are returned as stored, possibly stale, while refreshes that are
due go to the queue. Unknown players are fetched synchronously, but only when
the budget can afford it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from brawlsync.core.background_tasks import fire_and_forget
from brawlsync.core.config import RefreshSettings
from brawlsync.core.errors import BrawlSyncError, QuotaExhaustedError
from brawlsync.core.gateway import RemoteApiGateway
from brawlsync.core.repository import Repository
from brawlsync.core.snapshots import apply_ranked_refresh, save_clan
from brawlsync.models.job import RefreshKind
from brawlsync.models.player import PlayerRecord, as_utc
from brawlsync.refresh.decision import evaluate_refresh
from brawlsync.refresh.policy import calculate_priority
from brawlsync.refresh.queue import RefreshQueue
from brawlsync.utils.logger import get_logger

log = get_logger(__name__)

CLAN_MAX_AGE = timedelta(hours=1)


@dataclass(slots=True)
class LookupResult:
    player: PlayerRecord
    is_refreshing: bool
    queued: List[RefreshKind] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            **self.player.to_dict(),
            "is_refreshing": self.is_refreshing,
            "queued": [kind.value for kind in self.queued],
        }


class PlayerLookupService:
    def __init__(
        self,
        repository: Repository,
        queue: RefreshQueue,
        gateway: RemoteApiGateway,
        settings: RefreshSettings,
    ) -> None:
        self.repository = repository
        self.queue = queue
        self.gateway = gateway
        self.settings = settings

    def ttl(self, kind: RefreshKind) -> float:
        return self.settings.ranked_ttl if kind is RefreshKind.RANKED else self.settings.stats_ttl

    def priority(self, view_count: int, age: Optional[float], kind: RefreshKind) -> int:
        return calculate_priority(
            view_count,
            age,
            kind,
            very_stale=self.settings.very_stale,
            stale_boost=self.settings.stale_boost,
            stats_offset=self.settings.stats_offset,
        )

    async def get_player(self, brawlhalla_id: int) -> LookupResult:
        player = await self.repository.find_player(brawlhalla_id)
        if player is None:
            return await self.discover(brawlhalla_id)

        fire_and_forget(self.repository.increment_view_count(brawlhalla_id), label=f"view count {brawlhalla_id}")

        now = datetime.now(timezone.utc)
        refreshing = False
        queued: List[RefreshKind] = []
        for kind in (RefreshKind.RANKED, RefreshKind.STATS):
            decision = evaluate_refresh(player.last_refreshed(kind), kind, now=now, ttl=self.ttl(kind))
            if not decision.should_run:
                continue
            refreshing = True
            priority = self.priority(player.view_count, decision.age, kind)
            if await self._enqueue(kind, brawlhalla_id, priority):
                queued.append(kind)
                log.debug(f"Queued {kind.value} refresh for {brawlhalla_id} ({decision.reason}) priority {priority}")

        return LookupResult(player, refreshing, queued)

    async def discover(self, brawlhalla_id: int) -> LookupResult:
        """
        First-time fetch of a player nobody has stored yet.

        Raises:
            QuotaExhaustedError: remaining budget is below the discovery threshold
            RemoteNotFoundError: the provider does not know the player
        """
        remaining = await self.gateway.remaining_budget()
        if remaining < self.settings.discovery_min_tokens:
            raise QuotaExhaustedError(
                f"Not enough request budget to look up player {brawlhalla_id}",
                remaining=remaining,
                required=self.settings.discovery_min_tokens,
            )

        log.info(f"Discovering player {brawlhalla_id} ({remaining} tokens left)")
        data = await self.gateway.get_player_ranked(brawlhalla_id)
        await apply_ranked_refresh(self.repository, brawlhalla_id, data)

        queued: List[RefreshKind] = []
        if await self._enqueue(RefreshKind.STATS, brawlhalla_id, self.priority(0, None, RefreshKind.STATS)):
            queued.append(RefreshKind.STATS)

        player = await self.repository.find_player(brawlhalla_id)
        if player is None:
            player = PlayerRecord(brawlhalla_id=brawlhalla_id, name=data.get("name") or "")
        return LookupResult(player, True, queued)

    async def _enqueue(self, kind: RefreshKind, brawlhalla_id: int, priority: int) -> bool:
        try:
            return await self.queue.enqueue(kind, brawlhalla_id, priority)
        except BrawlSyncError as exc:
            log.warning(f"Could not queue {kind.value} refresh for {brawlhalla_id}: {exc.message}")
            return False


class ClanLookupService:
    """Serves clans from storage, refetching them when older than an hour."""

    def __init__(self, repository: Repository, gateway: RemoteApiGateway, max_age: timedelta = CLAN_MAX_AGE) -> None:
        self.repository = repository
        self.gateway = gateway
        self.max_age = max_age

    async def get_clan(self, clan_id: int) -> Dict[str, Any]:
        clan = await self.repository.find_clan(clan_id)
        updated = as_utc(clan.get("last_updated")) if clan else None
        if updated is not None and datetime.now(timezone.utc) - updated <= self.max_age:
            return clan

        try:
            data = await self.gateway.get_clan(clan_id)
            return await save_clan(self.repository, data)
        except BrawlSyncError as exc:
            if clan is None:
                raise
            log.warning(f"Failed to refresh clan {clan_id}, returning stale data: {exc.message}")
            return clan


__all__ = ["LookupResult", "PlayerLookupService", "ClanLookupService"]
