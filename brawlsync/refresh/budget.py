"""Item budget for one backfill pass, bounded by both a batch size and the queue backlog ceiling."""

from __future__ import annotations

from typing import Optional


class RefreshBudget:
    def __init__(self, max_items: int, *, backlog: int = 0, ceiling: Optional[int] = None) -> None:
        if max_items < 0:
            raise ValueError("max_items must be non-negative")
        self.remaining = max_items
        self.backlog = backlog
        self.ceiling = ceiling
        self.spent = 0

    @property
    def backlog_full(self) -> bool:
        return self.ceiling is not None and self.backlog >= self.ceiling

    def allow(self) -> bool:
        return self.remaining > 0 and not self.backlog_full

    def consume(self) -> None:
        if not self.allow():
            raise RuntimeError("Backfill budget exceeded")
        self.remaining -= 1
        self.backlog += 1
        self.spent += 1


__all__ = ["RefreshBudget"]
