"""
MongoDB Repository - Data Access Layer

Implements the :class:`~brawlsync.core.repository.Repository` operations on
motor collections. Every write is an upsert keyed by the entity identity, so
replaying a sweep page or a refresh job is harmless.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from pymongo import DESCENDING

from brawlsync.core.db import (
    get_aliases_col,
    get_clans_col,
    get_players_col,
    get_ranked_col,
    get_stats_col,
    get_teams_col,
    ping_db,
)
from brawlsync.models.job import RefreshKind
from brawlsync.models.player import BackfillCandidate, PlayerRecord
from brawlsync.utils.logger import get_logger

log = get_logger(__name__)

CLAN_SCAN_LIMIT = 20


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MongoRepository:
    """MongoDB data access layer for brawlsync"""

    def __init__(self, db):
        self._db = db
        self._players = get_players_col(db)
        self._aliases = get_aliases_col(db)
        self._ranked = get_ranked_col(db)
        self._stats = get_stats_col(db)
        self._teams = get_teams_col(db)
        self._clans = get_clans_col(db)

    async def ping(self) -> bool:
        return await ping_db(self._db.client)

    # ==================== PLAYERS ====================

    async def find_player(self, brawlhalla_id: int) -> Optional[PlayerRecord]:
        doc = await self._players.find_one({"brawlhalla_id": brawlhalla_id}, {"_id": 0})
        if doc is None:
            return None
        cursor = self._aliases.find({"brawlhalla_id": brawlhalla_id}, {"value": 1})
        doc["aliases"] = [alias["value"] async for alias in cursor if alias.get("value")]
        return PlayerRecord.from_document(doc)

    async def upsert_player(self, brawlhalla_id: int, fields: Dict[str, Any]) -> None:
        await self._players.update_one(
            {"brawlhalla_id": brawlhalla_id},
            {
                "$set": fields,
                "$setOnInsert": {"brawlhalla_id": brawlhalla_id, "view_count": 0, "created_at": _utcnow()},
            },
            upsert=True,
        )

    async def archive_old_name(self, brawlhalla_id: int, old_name: str) -> None:
        await self._aliases.update_one(
            {"brawlhalla_id": brawlhalla_id, "key": old_name.lower()},
            {"$setOnInsert": {"value": old_name, "created_at": _utcnow()}},
            upsert=True,
        )

    async def increment_view_count(self, brawlhalla_id: int) -> None:
        await self._players.update_one(
            {"brawlhalla_id": brawlhalla_id},
            {"$inc": {"view_count": 1}, "$set": {"last_viewed_at": _utcnow()}},
        )

    # ==================== DETAIL RECORDS ====================

    async def upsert_player_ranked(self, brawlhalla_id: int, detail: Dict[str, Any]) -> None:
        refreshed_at = detail.get("last_updated") or _utcnow()
        await self._ranked.replace_one(
            {"brawlhalla_id": brawlhalla_id},
            {**detail, "brawlhalla_id": brawlhalla_id, "last_updated": refreshed_at},
            upsert=True,
        )
        await self._players.update_one(
            {"brawlhalla_id": brawlhalla_id}, {"$set": {"ranked_updated_at": refreshed_at}}
        )

    async def upsert_player_stats(self, brawlhalla_id: int, detail: Dict[str, Any]) -> None:
        refreshed_at = detail.get("last_updated") or _utcnow()
        await self._stats.replace_one(
            {"brawlhalla_id": brawlhalla_id},
            {**detail, "brawlhalla_id": brawlhalla_id, "last_updated": refreshed_at},
            upsert=True,
        )
        await self._players.update_one(
            {"brawlhalla_id": brawlhalla_id}, {"$set": {"stats_updated_at": refreshed_at}}
        )

    async def remove_player_clan(self, brawlhalla_id: int) -> None:
        await self._stats.update_one({"brawlhalla_id": brawlhalla_id}, {"$set": {"clan": None}})

    # ==================== TEAMS / CLANS ====================

    async def upsert_team(self, region: str, ids: Tuple[int, int], fields: Dict[str, Any]) -> None:
        id_one, id_two = sorted(ids)
        await self._teams.update_one(
            {"region": region, "id_one": id_one, "id_two": id_two},
            {"$set": fields},
            upsert=True,
        )

    async def find_clan(self, clan_id: int) -> Optional[Dict[str, Any]]:
        return await self._clans.find_one({"clan_id": clan_id}, {"_id": 0})

    async def upsert_clan(self, clan_id: int, fields: Dict[str, Any]) -> None:
        await self._clans.update_one({"clan_id": clan_id}, {"$set": fields}, upsert=True)

    # ==================== BACKFILL ====================

    async def find_backfill_candidates(
        self, limit: int, *, clan_seen_since: Optional[datetime] = None
    ) -> List[BackfillCandidate]:
        """
        Players missing a detail record (best rated first), then members of
        recently refreshed clans that have no player record at all.
        """
        candidates: List[BackfillCandidate] = []
        cursor = (
            self._players.find(
                {"$or": [{"ranked_updated_at": None}, {"stats_updated_at": None}]},
                {"brawlhalla_id": 1, "ranked_updated_at": 1, "stats_updated_at": 1},
            )
            .sort("rating", DESCENDING)
            .limit(limit)
        )
        async for doc in cursor:
            missing = []
            if doc.get("ranked_updated_at") is None:
                missing.append(RefreshKind.RANKED)
            if doc.get("stats_updated_at") is None:
                missing.append(RefreshKind.STATS)
            candidates.append(BackfillCandidate(doc["brawlhalla_id"], missing))

        if len(candidates) >= limit:
            return candidates

        since = clan_seen_since or (_utcnow() - timedelta(days=1))
        member_ids: List[int] = []
        clans = (
            self._clans.find({"last_updated": {"$gte": since}}, {"members.brawlhalla_id": 1})
            .sort("last_updated", DESCENDING)
            .limit(CLAN_SCAN_LIMIT)
        )
        async for clan in clans:
            for member in clan.get("members") or []:
                member_id = member.get("brawlhalla_id")
                if member_id and member_id not in member_ids:
                    member_ids.append(member_id)

        if not member_ids:
            return candidates

        known = {
            doc["brawlhalla_id"]
            async for doc in self._players.find({"brawlhalla_id": {"$in": member_ids}}, {"brawlhalla_id": 1})
        }
        for member_id in member_ids:
            if len(candidates) >= limit:
                break
            if member_id not in known:
                candidates.append(BackfillCandidate(member_id))
        log.debug(f"Backfill scan found {len(candidates)} candidates")
        return candidates
