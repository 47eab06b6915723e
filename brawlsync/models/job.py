"""Refresh job model shared by the queue stores, the consumer and the demand policy."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional

MIN_PRIORITY = 1
MAX_PRIORITY = 100


class RefreshKind(str, Enum):
    RANKED = "ranked"
    STATS = "stats"


class JobState(str, Enum):
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    FAILED = "failed"


def dedupe_key(kind: RefreshKind, target_id: int) -> str:
    return f"refresh-{RefreshKind(kind).value}-{int(target_id)}"


def clamp_priority(priority: int) -> int:
    return max(MIN_PRIORITY, min(int(priority), MAX_PRIORITY))


def _utc_now_ts() -> float:
    return datetime.now(timezone.utc).timestamp()


def _optional_float(value: Any) -> Optional[float]:
    if value in (None, ""):
        return None
    return float(value)


@dataclass(slots=True)
class RefreshJob:
    """One pending refresh of a single player record."""

    key: str
    kind: RefreshKind
    target_id: int
    priority: int = MAX_PRIORITY
    created_at: float = 0.0
    state: JobState = JobState.WAITING
    attempts: int = 0
    not_before: Optional[float] = None
    last_error: Optional[str] = None
    claimed_until: Optional[float] = None

    def __post_init__(self) -> None:
        self.kind = RefreshKind(self.kind)
        self.state = JobState(self.state)
        self.target_id = int(self.target_id)
        self.priority = clamp_priority(self.priority)
        if not self.created_at:
            self.created_at = _utc_now_ts()

    @classmethod
    def create(cls, kind: RefreshKind, target_id: int, priority: int) -> "RefreshJob":
        return cls(key=dedupe_key(kind, target_id), kind=kind, target_id=target_id, priority=priority)

    @property
    def is_failed(self) -> bool:
        return self.state is JobState.FAILED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "kind": self.kind.value,
            "target_id": self.target_id,
            "priority": self.priority,
            "created_at": self.created_at,
            "state": self.state.value,
            "attempts": self.attempts,
            "not_before": self.not_before,
            "last_error": self.last_error,
            "claimed_until": self.claimed_until,
        }

    def to_hash(self) -> Dict[str, str]:
        """Flat string mapping for a Redis hash."""
        return {k: "" if v is None else str(v) for k, v in self.to_dict().items()}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "RefreshJob":
        return cls(
            key=str(payload["key"]),
            kind=RefreshKind(payload["kind"]),
            target_id=int(payload["target_id"]),
            priority=int(payload.get("priority") or MAX_PRIORITY),
            created_at=float(payload.get("created_at") or 0.0),
            state=JobState(payload.get("state") or JobState.WAITING.value),
            attempts=int(payload.get("attempts") or 0),
            not_before=_optional_float(payload.get("not_before")),
            last_error=payload.get("last_error") or None,
            claimed_until=_optional_float(payload.get("claimed_until")),
        )


__all__ = [
    "MIN_PRIORITY",
    "MAX_PRIORITY",
    "RefreshKind",
    "JobState",
    "RefreshJob",
    "dedupe_key",
    "clamp_priority",
]
