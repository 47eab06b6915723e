"""Refresh queue, consumer and the demand policy feeding them."""

from .backfill import Backfill
from .budget import RefreshBudget
from .consumer import RefreshConsumer
from .decision import DecisionResult, evaluate_refresh, record_age, should_refresh
from .policy import REFRESH_TTLS, calculate_priority, get_refresh_ttl
from .queue import MemoryQueueStore, QueueStore, RedisQueueStore, RefreshQueue

__all__ = [
    "Backfill",
    "RefreshBudget",
    "RefreshConsumer",
    "DecisionResult",
    "evaluate_refresh",
    "record_age",
    "should_refresh",
    "REFRESH_TTLS",
    "calculate_priority",
    "get_refresh_ttl",
    "MemoryQueueStore",
    "QueueStore",
    "RedisQueueStore",
    "RefreshQueue",
]
