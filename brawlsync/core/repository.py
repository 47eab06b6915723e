"""Persistence boundary used by the sweep, the refresh consumer and the lookup service."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Tuple

from brawlsync.models.player import BackfillCandidate, PlayerRecord


class Repository(Protocol):
    async def find_player(self, brawlhalla_id: int) -> Optional[PlayerRecord]: ...

    async def upsert_player(self, brawlhalla_id: int, fields: Dict[str, Any]) -> None:
        """Create the player or overwrite the given fields."""

    async def archive_old_name(self, brawlhalla_id: int, old_name: str) -> None:
        """Keep ``old_name`` as a searchable alias (idempotent per lower-cased name)."""

    async def upsert_team(self, region: str, ids: Tuple[int, int], fields: Dict[str, Any]) -> None: ...

    async def upsert_player_ranked(self, brawlhalla_id: int, detail: Dict[str, Any]) -> None:
        """Replace the ranked detail record, legends and teams included."""

    async def upsert_player_stats(self, brawlhalla_id: int, detail: Dict[str, Any]) -> None:
        """Replace the stats detail record, legends and clan membership included."""

    async def remove_player_clan(self, brawlhalla_id: int) -> None: ...

    async def increment_view_count(self, brawlhalla_id: int) -> None: ...

    async def find_backfill_candidates(
        self, limit: int, *, clan_seen_since: Optional[datetime] = None
    ) -> List[BackfillCandidate]:
        """Players lacking ranked or stats detail, then recently-seen clan members with no player record."""

    async def find_clan(self, clan_id: int) -> Optional[Dict[str, Any]]: ...

    async def upsert_clan(self, clan_id: int, fields: Dict[str, Any]) -> None: ...

    async def ping(self) -> bool:
        """Whether the backing database answers."""


__all__ = ["Repository"]
