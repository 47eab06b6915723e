import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from brawlsync.core.errors import QuotaExhaustedError, RemoteNotFoundError, RemoteTransientError
from brawlsync.models.job import RefreshKind
from brawlsync.refresh.queue import MemoryQueueStore, RefreshQueue
from brawlsync.services.lookup import ClanLookupService, PlayerLookupService


def make_gateway(tokens=180, ranked=None):
    gateway = MagicMock()
    gateway.remaining_budget = AsyncMock(return_value=tokens)
    gateway.get_player_ranked = AsyncMock(
        return_value=ranked or {"name": "Nova", "region": "US-E", "rating": 1500, "tier": "Gold 1", "games": 4}
    )
    gateway.get_clan = AsyncMock()
    return gateway


def make_service(repo, refresh_settings, gateway, clock):
    queue = RefreshQueue(MemoryQueueStore(clock))
    return PlayerLookupService(repo, queue, gateway, refresh_settings), queue


def test_fresh_player_is_served_without_queueing(repo, refresh_settings, clock):
    now = datetime.now(timezone.utc)
    repo.players[5] = {"brawlhalla_id": 5, "name": "Nova", "ranked_updated_at": now, "stats_updated_at": now}
    service, queue = make_service(repo, refresh_settings, make_gateway(), clock)

    async def run():
        result = await service.get_player(5)
        await asyncio.sleep(0)
        return result, await queue.backlog()

    result, backlog = asyncio.run(run())
    assert result.player.name == "Nova"
    assert not result.is_refreshing
    assert backlog == 0
    assert repo.views[5] == 1


def test_stale_player_is_returned_and_refresh_queued(repo, refresh_settings, clock):
    now = datetime.now(timezone.utc)
    repo.players[5] = {
        "brawlhalla_id": 5,
        "name": "Nova",
        "view_count": 400,
        "ranked_updated_at": now - timedelta(hours=1),
        "stats_updated_at": now - timedelta(minutes=5),
    }
    gateway = make_gateway()
    service, queue = make_service(repo, refresh_settings, gateway, clock)

    async def run():
        result = await service.get_player(5)
        return result, await queue.get(RefreshKind.RANKED, 5), await queue.get(RefreshKind.STATS, 5)

    result, ranked_job, stats_job = asyncio.run(run())
    assert result.is_refreshing
    assert result.queued == [RefreshKind.RANKED]
    assert result.to_dict()["queued"] == ["ranked"]
    assert ranked_job.priority == 80
    assert stats_job is None
    gateway.get_player_ranked.assert_not_awaited()


def test_repeat_lookup_does_not_duplicate_jobs(repo, refresh_settings, clock):
    repo.players[5] = {"brawlhalla_id": 5, "name": "Nova"}
    service, queue = make_service(repo, refresh_settings, make_gateway(), clock)

    async def run():
        first = await service.get_player(5)
        second = await service.get_player(5)
        return first, second, await queue.backlog()

    first, second, backlog = asyncio.run(run())
    assert first.queued == [RefreshKind.RANKED, RefreshKind.STATS]
    assert second.queued == []
    assert second.is_refreshing
    assert backlog == 2


def test_unknown_player_with_low_budget_is_refused(repo, refresh_settings, clock):
    gateway = make_gateway(tokens=refresh_settings.discovery_min_tokens - 1)
    service, _ = make_service(repo, refresh_settings, gateway, clock)

    with pytest.raises(QuotaExhaustedError) as excinfo:
        asyncio.run(service.get_player(77))
    assert excinfo.value.required == refresh_settings.discovery_min_tokens
    gateway.get_player_ranked.assert_not_awaited()


def test_unknown_player_is_discovered(repo, refresh_settings, clock):
    gateway = make_gateway()
    service, queue = make_service(repo, refresh_settings, gateway, clock)

    async def run():
        result = await service.get_player(77)
        return result, await queue.get(RefreshKind.STATS, 77)

    result, stats_job = asyncio.run(run())
    assert result.player.name == "Nova"
    assert result.player.rating == 1500
    assert result.player.ranked_updated_at is not None
    assert result.queued == [RefreshKind.STATS]
    assert stats_job is not None
    assert 77 in repo.ranked


def test_unknown_player_missing_upstream(repo, refresh_settings, clock):
    gateway = make_gateway()
    gateway.get_player_ranked.side_effect = RemoteNotFoundError("/player/77/ranked not found")
    service, _ = make_service(repo, refresh_settings, gateway, clock)

    with pytest.raises(RemoteNotFoundError):
        asyncio.run(service.get_player(77))
    assert repo.players == {}


CLAN_PAYLOAD = {
    "clan_id": 9,
    "clan_name": "Valhalla",
    "clan_create_date": 1600000000,
    "clan_xp": "1000",
    "clan": [{"brawlhalla_id": 5, "name": "Nova", "rank": "Leader", "join_date": 1600000100, "xp": 50}],
}


def test_fresh_clan_is_served_from_storage(repo):
    repo.clans[9] = {"clan_id": 9, "clan_name": "Stored", "last_updated": datetime.now(timezone.utc)}
    gateway = make_gateway()
    clan = asyncio.run(ClanLookupService(repo, gateway).get_clan(9))
    assert clan["clan_name"] == "Stored"
    gateway.get_clan.assert_not_awaited()


def test_stale_clan_is_refetched(repo):
    repo.clans[9] = {"clan_id": 9, "clan_name": "Old", "last_updated": datetime.now(timezone.utc) - timedelta(hours=2)}
    gateway = make_gateway()
    gateway.get_clan.return_value = CLAN_PAYLOAD
    clan = asyncio.run(ClanLookupService(repo, gateway).get_clan(9))
    assert clan["clan_name"] == "Valhalla"
    assert clan["members"][0]["brawlhalla_id"] == 5
    assert repo.clans[9]["clan_name"] == "Valhalla"


def test_stale_clan_survives_provider_failure(repo):
    repo.clans[9] = {"clan_id": 9, "clan_name": "Old", "last_updated": datetime.now(timezone.utc) - timedelta(hours=2)}
    gateway = make_gateway()
    gateway.get_clan.side_effect = RemoteTransientError("HTTP 503")
    clan = asyncio.run(ClanLookupService(repo, gateway).get_clan(9))
    assert clan["clan_name"] == "Old"


def test_missing_clan_failure_propagates(repo):
    gateway = make_gateway()
    gateway.get_clan.side_effect = RemoteNotFoundError("/clan/9 not found")
    with pytest.raises(RemoteNotFoundError):
        asyncio.run(ClanLookupService(repo, gateway).get_clan(9))
