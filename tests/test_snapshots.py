import asyncio
from datetime import datetime, timedelta, timezone

from brawlsync.core.snapshots import (
    apply_ranked_refresh,
    apply_stats_refresh,
    map_ranked_teams,
    map_stats_legends,
    resolve_tier,
    save_rankings_page,
)
from brawlsync.models.player import PlayerRecord

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def test_renamed_player_keeps_old_name_as_alias(repo):
    repo.players[1] = {"brawlhalla_id": 1, "name": "OldTag"}
    rows = [{"brawlhalla_id": 1, "name": "NewTag", "rating": 2000}]

    saved = asyncio.run(save_rankings_page(repo, "1v1", rows))
    assert saved == 1
    assert repo.players[1]["name"] == "NewTag"
    assert repo.aliases[1] == ["OldTag"]


def test_blank_names_are_not_saved(repo):
    rows = [{"brawlhalla_id": 2, "name": "  ", "rating": 1500}]
    assert asyncio.run(save_rankings_page(repo, "1v1", rows)) == 0
    assert repo.players == {}


def test_valhallan_tier_survives_ranked_refresh_within_grace():
    seen = PlayerRecord(brawlhalla_id=1, tier="Valhallan", last_updated=NOW - timedelta(hours=2))
    assert resolve_tier(seen, "Diamond", now=NOW) == "Valhallan"

    gone = PlayerRecord(brawlhalla_id=1, tier="Valhallan", last_updated=NOW - timedelta(days=2))
    assert resolve_tier(gone, "Diamond", now=NOW) == "Diamond"
    assert resolve_tier(seen, "Platinum 5", now=NOW) == "Platinum 5"


def test_ranked_refresh_archives_name_and_guards_tier(repo):
    repo.players[1] = {"brawlhalla_id": 1, "name": "OldTag", "tier": "Valhallan", "last_updated": NOW - timedelta(hours=1)}
    data = {"name": "NewTag", "tier": "Diamond", "rating": 2400, "2v2": []}

    asyncio.run(apply_ranked_refresh(repo, 1, data, now=NOW))
    assert repo.players[1]["tier"] == "Valhallan"
    assert repo.players[1]["ranked_updated_at"] == NOW
    assert repo.aliases[1] == ["OldTag"]


def test_duplicate_ranked_teams_are_collapsed():
    teams = [
        {"brawlhalla_id_one": 1, "brawlhalla_id_two": 2, "rating": 1500},
        {"brawlhalla_id_one": 1, "brawlhalla_id_two": 2, "rating": 1400},
        {"brawlhalla_id_one": 1, "brawlhalla_id_two": 3, "rating": 1300},
    ]
    mapped = map_ranked_teams(teams)
    assert [(t["id_one"], t["id_two"], t["rating"]) for t in mapped] == [(1, 2, 1500), (1, 3, 1300)]


def test_placeholder_legend_is_dropped():
    legends = [{"legend_id": 0, "matchtime": 99}, {"legend_id": 4, "matchtime": 120}]
    assert [legend["legend_id"] for legend in map_stats_legends(legends)] == [4]


def test_stats_refresh_fills_blank_name_and_clears_clan(repo):
    repo.players[1] = {"brawlhalla_id": 1, "name": ""}
    repo.stats[1] = {"clan": {"clan_id": 5}}
    data = {
        "name": "Found",
        "games": 10,
        "legends": [{"legend_id": 4, "matchtime": 120}, {"legend_id": 5, "matchtime": 30}],
    }

    asyncio.run(apply_stats_refresh(repo, 1, data, now=NOW))
    assert repo.players[1]["name"] == "Found"
    assert repo.stats[1]["clan"] is None
    assert repo.stats[1]["match_time_total"] == 150
    assert repo.players[1]["stats_updated_at"] == NOW
