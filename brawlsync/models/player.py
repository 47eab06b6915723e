"""Player and leaderboard records as they flow between the provider and the repository."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from brawlsync.models.job import RefreshKind


def _int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Mongo hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(slots=True)
class RankingEntry:
    """A row of a 1v1 / rotational leaderboard page."""

    brawlhalla_id: int
    name: str
    region: Optional[str] = None
    rank: Optional[int] = None
    rating: int = 0
    peak_rating: int = 0
    tier: Optional[str] = None
    games: int = 0
    wins: int = 0

    @classmethod
    def from_api(cls, row: Mapping[str, Any]) -> "RankingEntry":
        return cls(
            brawlhalla_id=_int(row.get("brawlhalla_id")),
            name=str(row.get("name") or ""),
            region=row.get("region"),
            rank=_int(row.get("rank"), 0) or None,
            rating=_int(row.get("rating")),
            peak_rating=_int(row.get("peak_rating")),
            tier=row.get("tier"),
            games=_int(row.get("games")),
            wins=_int(row.get("wins")),
        )

    def fields(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "region": self.region,
            "rating": self.rating,
            "peak_rating": self.peak_rating,
            "tier": self.tier,
            "games": self.games,
            "wins": self.wins,
        }


@dataclass(slots=True)
class TeamEntry:
    """A row of the 2v2 leaderboard, identified by region and the ordered id pair."""

    region: str
    id_one: int
    id_two: int
    team_name: Optional[str] = None
    rank: Optional[int] = None
    rating: int = 0
    peak_rating: int = 0
    tier: Optional[str] = None
    wins: int = 0
    games: int = 0

    def __post_init__(self) -> None:
        if self.id_one > self.id_two:
            self.id_one, self.id_two = self.id_two, self.id_one

    @classmethod
    def from_api(cls, row: Mapping[str, Any], default_region: str = "all") -> "TeamEntry":
        return cls(
            region=str(row.get("region") or default_region),
            id_one=_int(row.get("brawlhalla_id_one")),
            id_two=_int(row.get("brawlhalla_id_two")),
            team_name=row.get("teamname"),
            rank=_int(row.get("rank"), 0) or None,
            rating=_int(row.get("rating")),
            peak_rating=_int(row.get("peak_rating")),
            tier=row.get("tier"),
            wins=_int(row.get("wins")),
            games=_int(row.get("games")),
        )

    @property
    def ids(self) -> tuple:
        return (self.id_one, self.id_two)

    def fields(self) -> Dict[str, Any]:
        return {
            "rank": self.rank,
            "team_name": self.team_name,
            "rating": self.rating,
            "peak_rating": self.peak_rating,
            "tier": self.tier,
            "wins": self.wins,
            "games": self.games,
        }


@dataclass(slots=True)
class PlayerRecord:
    """Stored player row plus the freshness markers of its detail records."""

    brawlhalla_id: int
    name: str = ""
    region: Optional[str] = None
    rating: int = 0
    peak_rating: int = 0
    tier: Optional[str] = None
    games: int = 0
    wins: int = 0
    view_count: int = 0
    last_updated: Optional[datetime] = None
    ranked_updated_at: Optional[datetime] = None
    stats_updated_at: Optional[datetime] = None
    aliases: List[str] = field(default_factory=list)

    def last_refreshed(self, kind: RefreshKind) -> Optional[datetime]:
        if RefreshKind(kind) is RefreshKind.RANKED:
            return self.ranked_updated_at
        return self.stats_updated_at

    def to_dict(self) -> Dict[str, Any]:
        def _iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            "brawlhalla_id": self.brawlhalla_id,
            "name": self.name,
            "region": self.region,
            "rating": self.rating,
            "peak_rating": self.peak_rating,
            "tier": self.tier,
            "games": self.games,
            "wins": self.wins,
            "view_count": self.view_count,
            "last_updated": _iso(self.last_updated),
            "ranked_updated_at": _iso(self.ranked_updated_at),
            "stats_updated_at": _iso(self.stats_updated_at),
            "aliases": list(self.aliases),
        }

    @classmethod
    def from_document(cls, doc: Mapping[str, Any]) -> "PlayerRecord":
        return cls(
            brawlhalla_id=_int(doc.get("brawlhalla_id")),
            name=str(doc.get("name") or ""),
            region=doc.get("region"),
            rating=_int(doc.get("rating")),
            peak_rating=_int(doc.get("peak_rating")),
            tier=doc.get("tier"),
            games=_int(doc.get("games")),
            wins=_int(doc.get("wins")),
            view_count=_int(doc.get("view_count")),
            last_updated=as_utc(doc.get("last_updated")),
            ranked_updated_at=as_utc(doc.get("ranked_updated_at")),
            stats_updated_at=as_utc(doc.get("stats_updated_at")),
            aliases=list(doc.get("aliases") or []),
        )


@dataclass(slots=True)
class BackfillCandidate:
    brawlhalla_id: int
    missing: List[RefreshKind] = field(default_factory=lambda: [RefreshKind.RANKED, RefreshKind.STATS])


__all__ = ["RankingEntry", "TeamEntry", "PlayerRecord", "BackfillCandidate", "as_utc"]
