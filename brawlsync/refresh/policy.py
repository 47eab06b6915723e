"""Demand-driven refresh priority and per-kind freshness windows."""

from __future__ import annotations

import math
from typing import Dict, Optional

from brawlsync.models.job import MAX_PRIORITY, MIN_PRIORITY, RefreshKind

REFRESH_TTLS: Dict[RefreshKind, float] = {
    RefreshKind.RANKED: 15 * 60,
    RefreshKind.STATS: 6 * 60 * 60,
}

VERY_STALE_SECONDS = 24 * 60 * 60
STALE_BOOST = 20
STATS_OFFSET = 10


def get_refresh_ttl(kind: RefreshKind, ttls: Optional[Dict[RefreshKind, float]] = None) -> float:
    return (ttls or REFRESH_TTLS)[RefreshKind(kind)]


def calculate_priority(
    view_count: int,
    age_seconds: Optional[float],
    kind: RefreshKind,
    *,
    very_stale: float = VERY_STALE_SECONDS,
    stale_boost: int = STALE_BOOST,
    stats_offset: int = STATS_OFFSET,
) -> int:
    """Lower is more urgent. A record that was never refreshed counts as infinitely old."""
    age = math.inf if age_seconds is None else age_seconds
    priority = max(MIN_PRIORITY, MAX_PRIORITY - math.floor(math.sqrt(max(view_count, 0))))
    if age > very_stale:
        priority -= stale_boost
    if RefreshKind(kind) is RefreshKind.STATS:
        priority += stats_offset
    return max(MIN_PRIORITY, min(MAX_PRIORITY, priority))


__all__ = [
    "REFRESH_TTLS",
    "VERY_STALE_SECONDS",
    "STALE_BOOST",
    "STATS_OFFSET",
    "get_refresh_ttl",
    "calculate_priority",
]
