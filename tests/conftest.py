from typing import Any, Dict, List, Optional, Tuple

import httpx
import pytest

from brawlsync.core.config import BackfillSettings, RefreshSettings, SweepSettings
from brawlsync.core.gateway import RemoteApiGateway
from brawlsync.core.store import MemoryStore
from brawlsync.models.player import BackfillCandidate, PlayerRecord
from brawlsync.utils.rate_limiter import TokenBudgetLimiter


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRepository:
    """Dict-backed stand-in for the Mongo repository."""

    def __init__(self):
        self.players: Dict[int, Dict[str, Any]] = {}
        self.aliases: Dict[int, List[str]] = {}
        self.teams: Dict[Tuple[str, int, int], Dict[str, Any]] = {}
        self.ranked: Dict[int, Dict[str, Any]] = {}
        self.stats: Dict[int, Dict[str, Any]] = {}
        self.clans: Dict[int, Dict[str, Any]] = {}
        self.candidates: List[BackfillCandidate] = []
        self.views: Dict[int, int] = {}
        self.reachable = True

    async def find_player(self, brawlhalla_id: int) -> Optional[PlayerRecord]:
        doc = self.players.get(brawlhalla_id)
        if doc is None:
            return None
        return PlayerRecord.from_document({**doc, "aliases": self.aliases.get(brawlhalla_id, [])})

    async def upsert_player(self, brawlhalla_id: int, fields: Dict[str, Any]) -> None:
        doc = self.players.setdefault(brawlhalla_id, {"brawlhalla_id": brawlhalla_id, "view_count": 0})
        doc.update(fields)

    async def archive_old_name(self, brawlhalla_id: int, old_name: str) -> None:
        names = self.aliases.setdefault(brawlhalla_id, [])
        if old_name.lower() not in {name.lower() for name in names}:
            names.append(old_name)

    async def upsert_team(self, region: str, ids: Tuple[int, int], fields: Dict[str, Any]) -> None:
        id_one, id_two = sorted(ids)
        self.teams[(region, id_one, id_two)] = dict(fields)

    async def upsert_player_ranked(self, brawlhalla_id: int, detail: Dict[str, Any]) -> None:
        self.ranked[brawlhalla_id] = dict(detail)
        if brawlhalla_id in self.players:
            self.players[brawlhalla_id]["ranked_updated_at"] = detail.get("last_updated")

    async def upsert_player_stats(self, brawlhalla_id: int, detail: Dict[str, Any]) -> None:
        self.stats[brawlhalla_id] = dict(detail)
        if brawlhalla_id in self.players:
            self.players[brawlhalla_id]["stats_updated_at"] = detail.get("last_updated")

    async def remove_player_clan(self, brawlhalla_id: int) -> None:
        if brawlhalla_id in self.stats:
            self.stats[brawlhalla_id]["clan"] = None

    async def increment_view_count(self, brawlhalla_id: int) -> None:
        self.views[brawlhalla_id] = self.views.get(brawlhalla_id, 0) + 1
        if brawlhalla_id in self.players:
            self.players[brawlhalla_id]["view_count"] = self.players[brawlhalla_id].get("view_count", 0) + 1

    async def find_backfill_candidates(self, limit: int, *, clan_seen_since=None) -> List[BackfillCandidate]:
        return self.candidates[:limit]

    async def find_clan(self, clan_id: int) -> Optional[Dict[str, Any]]:
        clan = self.clans.get(clan_id)
        return dict(clan) if clan else None

    async def upsert_clan(self, clan_id: int, fields: Dict[str, Any]) -> None:
        self.clans.setdefault(clan_id, {}).update(fields)

    async def ping(self) -> bool:
        return self.reachable


def make_gateway(handler, *, store=None, capacity=100, min_spacing=0.0, **kwargs) -> RemoteApiGateway:
    """Gateway over an in-memory budget whose HTTP traffic is answered by ``handler``."""
    limiter = TokenBudgetLimiter(
        store or MemoryStore(),
        key="test-limiter",
        capacity=capacity,
        refill_interval=900,
        min_spacing=min_spacing,
        backoff_base=0.01,
        reconnect_delay=0,
    )
    kwargs.setdefault("transient_retry_delay", 0)
    return RemoteApiGateway(
        limiter,
        api_key="test-key",
        base_url="https://api.test",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def repo():
    return FakeRepository()


@pytest.fixture
def refresh_settings():
    return RefreshSettings(concurrency=2, retry_backoff=0, poll_interval=0.01, defer_delay=60)


@pytest.fixture
def sweep_settings():
    return SweepSettings(
        tick_interval=60,
        brackets=["1v1"],
        hot_pages=(1, 2),
        cold_pages=(3, 4),
        cold_every_ticks=2,
        regions=["eu", "sea"],
        regional_max_page=2,
        idle_min_tokens=100,
        lock_key="test:sweep-lock",
        lock_ttl=60,
        lock_heartbeat=30,
    )


@pytest.fixture
def backfill_settings():
    return BackfillSettings(batch_size=3, scan_limit=10, max_backlog=5, priority=100)


@pytest.fixture
def gateway_factory():
    return make_gateway
