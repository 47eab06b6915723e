"""
Merge rules applied when provider payloads are written to the repository.

Shared by the sweep (leaderboard pages), the refresh consumer (ranked and
stats detail) and the lookup service (discovery and clans). A display name is
never overwritten without first being archived as an alias.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional

from brawlsync.core.repository import Repository
from brawlsync.models.player import PlayerRecord, RankingEntry, TeamEntry, as_utc
from brawlsync.utils.logger import get_logger

log = get_logger(__name__)

TEAM_BRACKETS = {"2v2"}
LEADERBOARD_GRACE = timedelta(hours=24)

_RANKED_LEGEND_FIELDS = ("legend_id", "legend_name_key", "rating", "peak_rating", "tier", "wins", "games")
_STATS_LEGEND_FIELDS = (
    "legend_id",
    "legend_name_key",
    "xp",
    "level",
    "xp_percentage",
    "games",
    "wins",
    "matchtime",
    "kos",
    "teamkos",
    "suicides",
    "falls",
    "damagedealt",
    "damagetaken",
    "damageweaponone",
    "damageweapontwo",
    "timeheldweaponone",
    "timeheldweapontwo",
    "koweaponone",
    "koweapontwo",
    "kounarmed",
    "kothrownitem",
    "kogadgets",
)
_STATS_TOTAL_FIELDS = (
    "xp",
    "level",
    "xp_percentage",
    "games",
    "wins",
    "damagebomb",
    "damagemine",
    "damagespikeball",
    "damagesidekick",
    "hitsnowball",
    "kobomb",
    "komine",
    "kospikeball",
    "kosidekick",
    "kosnowball",
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _pick(row: Mapping[str, Any], names: Iterable[str]) -> Dict[str, Any]:
    return {name: row.get(name) for name in names}


async def _archive_if_renamed(repo: Repository, existing: Optional[PlayerRecord], new_name: str) -> None:
    if existing and existing.name and existing.name != new_name:
        await repo.archive_old_name(existing.brawlhalla_id, existing.name)
        log.debug(f"Archived alias {existing.name!r} for {existing.brawlhalla_id}")


async def save_ranking_player(repo: Repository, entry: RankingEntry, *, now: Optional[datetime] = None) -> bool:
    if not entry.name.strip():
        return False
    existing = await repo.find_player(entry.brawlhalla_id)
    await _archive_if_renamed(repo, existing, entry.name)
    await repo.upsert_player(entry.brawlhalla_id, {**entry.fields(), "last_updated": now or _utcnow()})
    return True


async def save_ranking_team(repo: Repository, team: TeamEntry, *, now: Optional[datetime] = None) -> bool:
    if not team.id_one or not team.id_two:
        return False
    await repo.upsert_team(team.region, team.ids, {**team.fields(), "last_updated": now or _utcnow()})
    return True


async def save_rankings_page(repo: Repository, bracket: str, rows: List[Mapping[str, Any]], region: str = "all") -> int:
    """Persist one leaderboard page and return how many rows were written."""
    now = _utcnow()
    saved = 0
    for row in rows:
        if bracket in TEAM_BRACKETS:
            written = await save_ranking_team(repo, TeamEntry.from_api(row, default_region=region), now=now)
        else:
            written = await save_ranking_player(repo, RankingEntry.from_api(row), now=now)
        saved += int(written)
    return saved


def resolve_tier(
    existing: Optional[PlayerRecord],
    new_tier: Optional[str],
    *,
    now: Optional[datetime] = None,
    grace: timedelta = LEADERBOARD_GRACE,
) -> Optional[str]:
    """
    Keep a leaderboard-sourced "Valhallan" tier when the ranked endpoint reports "Diamond".

    The downgrade is accepted once the player has not been seen on a leaderboard
    page for longer than ``grace``.
    """
    if existing is None or existing.tier != "Valhallan" or new_tier != "Diamond":
        return new_tier
    last_seen = as_utc(existing.last_updated)
    if last_seen is None or (now or _utcnow()) - last_seen > grace:
        return new_tier
    return existing.tier


def map_ranked_legends(legends: Optional[List[Mapping[str, Any]]]) -> List[Dict[str, Any]]:
    return [_pick(legend, _RANKED_LEGEND_FIELDS) for legend in legends or []]


def map_ranked_teams(teams: Optional[List[Mapping[str, Any]]]) -> List[Dict[str, Any]]:
    unique: Dict[str, Mapping[str, Any]] = {}
    for team in teams or []:
        unique.setdefault(f"{team.get('brawlhalla_id_one')}-{team.get('brawlhalla_id_two')}", team)
    return [
        {
            "id_one": team.get("brawlhalla_id_one"),
            "id_two": team.get("brawlhalla_id_two"),
            "team_name": team.get("teamname"),
            "rating": team.get("rating"),
            "peak_rating": team.get("peak_rating"),
            "tier": team.get("tier"),
            "wins": team.get("wins"),
            "games": team.get("games"),
        }
        for team in unique.values()
    ]


def map_stats_legends(legends: Optional[List[Mapping[str, Any]]]) -> List[Dict[str, Any]]:
    return [_pick(legend, _STATS_LEGEND_FIELDS) for legend in legends or [] if legend.get("legend_id") != 0]


def map_clan(clan: Optional[Mapping[str, Any]]) -> Optional[Dict[str, Any]]:
    if not clan:
        return None
    return {
        "clan_id": clan.get("clan_id"),
        "clan_name": clan.get("clan_name"),
        "clan_xp": clan.get("clan_xp"),
        "clan_lifetime_xp": clan.get("clan_lifetime_xp"),
        "personal_xp": clan.get("personal_xp"),
    }


async def apply_ranked_refresh(
    repo: Repository, player_id: int, data: Mapping[str, Any], *, now: Optional[datetime] = None
) -> None:
    now = now or _utcnow()
    existing = await repo.find_player(player_id)

    fields: Dict[str, Any] = {
        "rating": data.get("rating"),
        "peak_rating": data.get("peak_rating"),
        "tier": resolve_tier(existing, data.get("tier"), now=now),
        "games": data.get("games"),
        "wins": data.get("wins"),
    }
    if data.get("region"):
        fields["region"] = data.get("region")
    new_name = data.get("name") or ""
    if new_name.strip():
        await _archive_if_renamed(repo, existing, new_name)
        fields["name"] = new_name

    await repo.upsert_player(player_id, fields)
    await repo.upsert_player_ranked(
        player_id,
        {
            "global_rank": data.get("global_rank"),
            "region_rank": data.get("region_rank"),
            "legends": map_ranked_legends(data.get("legends")),
            "teams": map_ranked_teams(data.get("2v2")),
            "last_updated": now,
        },
    )


async def apply_stats_refresh(
    repo: Repository, player_id: int, data: Mapping[str, Any], *, now: Optional[datetime] = None
) -> None:
    now = now or _utcnow()
    legends = map_stats_legends(data.get("legends"))

    new_name = data.get("name") or ""
    if new_name.strip():
        existing = await repo.find_player(player_id)
        if existing is not None and not existing.name.strip():
            await repo.upsert_player(player_id, {"name": new_name})

    clan = map_clan(data.get("clan"))
    if clan is None:
        await repo.remove_player_clan(player_id)

    detail = _pick(data, _STATS_TOTAL_FIELDS)
    detail.update(
        {
            "match_time_total": sum(int(legend.get("matchtime") or 0) for legend in legends),
            "legends": legends,
            "clan": clan,
            "last_updated": now,
        }
    )
    await repo.upsert_player_stats(player_id, detail)


def map_clan_members(members: Optional[List[Mapping[str, Any]]]) -> List[Dict[str, Any]]:
    result = []
    for member in members or []:
        joined = member.get("join_date")
        result.append(
            {
                "brawlhalla_id": member.get("brawlhalla_id"),
                "name": member.get("name"),
                "rank": member.get("rank"),
                "xp": member.get("xp"),
                "join_date": datetime.fromtimestamp(joined, timezone.utc) if joined else None,
            }
        )
    return result


async def save_clan(repo: Repository, data: Mapping[str, Any], *, now: Optional[datetime] = None) -> Dict[str, Any]:
    created = data.get("clan_create_date")
    fields = {
        "clan_id": data.get("clan_id"),
        "clan_name": data.get("clan_name"),
        "clan_xp": data.get("clan_xp"),
        "clan_lifetime_xp": data.get("clan_lifetime_xp"),
        "clan_create_date": datetime.fromtimestamp(created, timezone.utc) if created else None,
        "members": map_clan_members(data.get("clan")),
        "last_updated": now or _utcnow(),
    }
    await repo.upsert_clan(int(data.get("clan_id")), fields)
    return fields


__all__ = [
    "TEAM_BRACKETS",
    "save_ranking_player",
    "save_ranking_team",
    "save_rankings_page",
    "resolve_tier",
    "apply_ranked_refresh",
    "apply_stats_refresh",
    "save_clan",
]
