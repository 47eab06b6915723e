"""Refresh decision based on the age of a record and its kind's TTL."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from brawlsync.models.job import RefreshKind
from brawlsync.models.player import as_utc
from brawlsync.refresh.policy import get_refresh_ttl


@dataclass(slots=True)
class DecisionResult:
    should_run: bool
    reason: str
    age: Optional[float] = None


def record_age(last_updated: Optional[datetime], *, now: Optional[datetime] = None) -> Optional[float]:
    if last_updated is None:
        return None
    now = now or datetime.now(timezone.utc)
    return (now - as_utc(last_updated)).total_seconds()


def evaluate_refresh(
    last_updated: Optional[datetime],
    kind: RefreshKind,
    *,
    now: Optional[datetime] = None,
    ttl: Optional[float] = None,
) -> DecisionResult:
    ttl = get_refresh_ttl(kind) if ttl is None else ttl
    age = record_age(last_updated, now=now)
    if age is None:
        return DecisionResult(True, "never refreshed")

    if age > ttl:
        return DecisionResult(True, f"stale by {int(age - ttl)}s", age)

    remaining = int(ttl - age)
    return DecisionResult(False, f"fresh (next refresh in {remaining}s)", age)


def should_refresh(
    last_updated: Optional[datetime], kind: RefreshKind, *, now: Optional[datetime] = None, ttl: Optional[float] = None
) -> bool:
    return evaluate_refresh(last_updated, kind, now=now, ttl=ttl).should_run


__all__ = ["DecisionResult", "record_age", "evaluate_refresh", "should_refresh"]
