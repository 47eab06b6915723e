from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ServiceInfo(BaseModel):
    service: str
    version: str
    status: str = "running"


class HealthResponse(BaseModel):
    status: str
    store: str
    database: str = "ok"
    budget_remaining: Optional[int] = None
    backlog: Optional[int] = None


class TickReportRead(BaseModel):
    status: str
    reason: str = ""
    tick: Optional[int] = None
    pages_synced: int = 0
    pages_failed: int = 0
    backfill_enqueued: int = 0


class StatusResponse(BaseModel):
    limiter: Dict[str, Any]
    cursors: Dict[str, Dict[str, Any]]
    backlog: int
    consumer: Dict[str, int] = Field(default_factory=dict)
    last_tick: Optional[TickReportRead] = None


class PlayerRead(BaseModel):
    """Stored player row as served to lookups (display shaping happens elsewhere)."""

    brawlhalla_id: int
    name: str
    region: Optional[str] = None
    rating: int = 0
    peak_rating: int = 0
    tier: Optional[str] = None
    games: int = 0
    wins: int = 0
    view_count: int = 0
    last_updated: Optional[str] = None
    ranked_updated_at: Optional[str] = None
    stats_updated_at: Optional[str] = None
    aliases: List[str] = Field(default_factory=list)
    is_refreshing: bool = False
    queued: List[str] = Field(default_factory=list)


class ErrorResponse(BaseModel):
    error_type: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)
