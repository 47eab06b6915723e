"""Model exports for brawlsync."""

from .job import MAX_PRIORITY, MIN_PRIORITY, JobState, RefreshJob, RefreshKind, clamp_priority, dedupe_key
from .player import BackfillCandidate, PlayerRecord, RankingEntry, TeamEntry

__all__ = [
    "MAX_PRIORITY",
    "MIN_PRIORITY",
    "JobState",
    "RefreshJob",
    "RefreshKind",
    "clamp_priority",
    "dedupe_key",
    "BackfillCandidate",
    "PlayerRecord",
    "RankingEntry",
    "TeamEntry",
]
