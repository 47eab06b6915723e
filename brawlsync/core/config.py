"""Runtime settings for the sync worker, layered as environment over settings.yaml."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from brawlsync.core.errors import ConfigError

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent.parent / "config" / "settings.yaml"


class Config:
    _config = None

    @classmethod
    def load(cls, path: Optional[str] = None) -> Dict[str, Any]:
        if cls._config is None:
            config_path = Path(path or os.getenv("BRAWLSYNC_CONFIG") or DEFAULT_CONFIG_PATH)
            try:
                with open(config_path, "r", encoding="utf-8") as f:
                    cls._config = yaml.safe_load(f) or {}
            except FileNotFoundError:
                cls._config = {}
        return cls._config

    @classmethod
    def get(cls, *keys, default=None):
        cfg = cls.load()
        for key in keys:
            if not isinstance(cfg, dict):
                return default
            cfg = cfg.get(key)
        return cfg if cfg is not None else default

    @classmethod
    def reset(cls) -> None:
        cls._config = None


def _env_list(var_name: str) -> List[str]:
    raw = os.getenv(var_name)
    if not raw:
        return []
    parts = [item.strip() for item in raw.replace("\n", ",").split(",")]
    return [item for item in parts if item]


def _number(value: Any, key: str, cast=float):
    try:
        return cast(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid numeric value for {key}: {value!r}", key=key) from exc


_TRUE_STRINGS = {"1", "true", "yes", "on"}
_FALSE_STRINGS = {"0", "false", "no", "off", ""}


def _flag(section: str, name: str, default: bool, env: Optional[str] = None) -> bool:
    raw = os.getenv(env) if env else None
    if raw is None or raw == "":
        raw = Config.get(section, name, default=default)
    if isinstance(raw, bool):
        return raw
    text = str(raw).strip().lower()
    if text in _TRUE_STRINGS:
        return True
    if text in _FALSE_STRINGS:
        return False
    raise ConfigError(f"Invalid boolean value for {section}.{name}: {raw!r}", key=f"{section}.{name}")


def _setting(section: str, name: str, default: Any, cast=float, env: Optional[str] = None):
    raw = os.getenv(env) if env else None
    if raw is None or raw == "":
        raw = Config.get(section, name, default=default)
    return _number(raw, f"{section}.{name}", cast)


def _page_range(section: str, name: str, default: Tuple[int, int]) -> Tuple[int, int]:
    raw = Config.get(section, name, default=list(default))
    if not isinstance(raw, (list, tuple)) or len(raw) != 2:
        raise ConfigError(f"{section}.{name} must be a [start, end] pair", key=f"{section}.{name}")
    start, end = (_number(v, f"{section}.{name}", int) for v in raw)
    if start < 1 or end < start:
        raise ConfigError(f"{section}.{name} is not a valid page range: {raw!r}", key=f"{section}.{name}")
    return start, end


@dataclass(slots=True)
class LimiterSettings:
    key: str = "bhapi-limiter"
    capacity: int = 180
    refill_interval: float = 15 * 60
    min_spacing: float = 0.1
    backoff_base: float = 1.0
    max_backoff: float = 60.0
    max_throttle_retries: int = 3
    max_transient_retries: int = 1
    transient_retry_delay: float = 0.5


@dataclass(slots=True)
class SweepSettings:
    tick_interval: float = 60
    brackets: List[str] = field(default_factory=lambda: ["1v1", "2v2"])
    hot_pages: Tuple[int, int] = (1, 20)
    cold_pages: Tuple[int, int] = (21, 200)
    cold_every_ticks: int = 8
    regions: List[str] = field(
        default_factory=lambda: ["us-e", "eu", "sea", "brz", "aus", "us-w", "jpn", "me", "sa"]
    )
    regional_max_page: int = 200
    idle_min_tokens: int = 100
    lock_key: str = "sweep:lock"
    lock_ttl: float = 5 * 60
    lock_heartbeat: float = 30


@dataclass(slots=True)
class RefreshSettings:
    concurrency: int = 10
    ranked_ttl: float = 15 * 60
    stats_ttl: float = 6 * 60 * 60
    very_stale: float = 24 * 60 * 60
    stale_boost: int = 20
    stats_offset: int = 10
    ranked_min_tokens: int = 20
    stats_min_tokens: int = 40
    discovery_min_tokens: int = 50
    defer_delay: float = 5 * 60
    max_attempts: int = 3
    retry_backoff: float = 1.0
    remove_on_fail: bool = True
    poll_interval: float = 1.0
    claim_timeout: float = 5 * 60


@dataclass(slots=True)
class BackfillSettings:
    batch_size: int = 10
    scan_limit: int = 50
    max_backlog: int = 500
    priority: int = 100


class SyncSettings:
    """Container for runtime-tunable worker settings."""

    def __init__(self) -> None:
        self.api_key: Optional[str] = os.getenv("BRAWLHALLA_API_KEY") or None
        self.api_base_url: str = os.getenv("BRAWLHALLA_API_URL") or Config.get(
            "provider", "base_url", default="https://api.brawlhalla.com"
        )
        self.request_timeout: float = _setting("provider", "timeout_seconds", 10.0, env="BRAWLHALLA_API_TIMEOUT")

        self.redis_url: str = os.getenv("REDIS_URL") or Config.get("stores", "redis_url", default="") or ""
        self.mongo_uri: Optional[str] = os.getenv("MONGO_URI") or os.getenv("MONGODB_URI") or None
        self.mongo_db: str = os.getenv("MONGO_DB") or Config.get("stores", "mongo_db", default="brawlsync")

        self.limiter = self._load_limiter()
        self.sweep = self._load_sweep()
        self.refresh = self._load_refresh()
        self.backfill = self._load_backfill()

    @staticmethod
    def _load_limiter() -> LimiterSettings:
        return LimiterSettings(
            key=Config.get("limiter", "key", default="bhapi-limiter"),
            capacity=_setting("limiter", "capacity", 180, int, env="LIMITER_CAPACITY"),
            refill_interval=_setting("limiter", "refill_interval_seconds", 900.0),
            min_spacing=_setting("limiter", "min_spacing_seconds", 0.1),
            backoff_base=_setting("limiter", "backoff_base_seconds", 1.0),
            max_backoff=_setting("limiter", "max_backoff_seconds", 60.0),
            max_throttle_retries=_setting("limiter", "max_throttle_retries", 3, int),
            max_transient_retries=_setting("limiter", "max_transient_retries", 1, int),
            transient_retry_delay=_setting("limiter", "transient_retry_delay_seconds", 0.5),
        )

    @staticmethod
    def _load_sweep() -> SweepSettings:
        brackets = _env_list("SWEEP_BRACKETS") or list(Config.get("sweep", "brackets", default=["1v1", "2v2"]))
        if not brackets:
            raise ConfigError("At least one bracket must be tracked", key="sweep.brackets")
        regions = _env_list("SWEEP_REGIONS") or list(Config.get("sweep", "regions", default=[]))
        hot = _page_range("sweep", "hot_pages", (1, 20))
        cold = _page_range("sweep", "cold_pages", (21, 200))
        if cold[0] <= hot[1]:
            raise ConfigError("sweep.cold_pages must start after sweep.hot_pages", key="sweep.cold_pages")
        settings = SweepSettings(
            tick_interval=_setting("sweep", "tick_interval_seconds", 60.0, env="SWEEP_TICK_SECONDS"),
            brackets=brackets,
            hot_pages=hot,
            cold_pages=cold,
            cold_every_ticks=max(_setting("sweep", "cold_every_ticks", 8, int), 1),
            regional_max_page=max(_setting("sweep", "regional_max_page", 200, int), 1),
            idle_min_tokens=_setting("sweep", "idle_min_tokens", 100, int),
            lock_key=Config.get("sweep", "lock_key", default="sweep:lock"),
            lock_ttl=_setting("sweep", "lock_ttl_seconds", 300.0),
            lock_heartbeat=_setting("sweep", "lock_heartbeat_seconds", 30.0),
        )
        if regions:
            settings.regions = regions
        return settings

    @staticmethod
    def _load_refresh() -> RefreshSettings:
        return RefreshSettings(
            concurrency=max(_setting("refresh", "concurrency", 10, int, env="REFRESH_CONCURRENCY"), 1),
            ranked_ttl=_setting("refresh", "ranked_ttl_seconds", 900.0),
            stats_ttl=_setting("refresh", "stats_ttl_seconds", 21600.0),
            very_stale=_setting("refresh", "very_stale_seconds", 86400.0),
            stale_boost=_setting("refresh", "stale_boost", 20, int),
            stats_offset=_setting("refresh", "stats_offset", 10, int),
            ranked_min_tokens=_setting("refresh", "ranked_min_tokens", 20, int),
            stats_min_tokens=_setting("refresh", "stats_min_tokens", 40, int),
            discovery_min_tokens=_setting("refresh", "discovery_min_tokens", 50, int),
            defer_delay=_setting("refresh", "defer_seconds", 300.0),
            max_attempts=max(_setting("refresh", "max_attempts", 3, int), 1),
            retry_backoff=_setting("refresh", "retry_backoff_seconds", 1.0),
            remove_on_fail=_flag("refresh", "remove_on_fail", True, env="REFRESH_REMOVE_ON_FAIL"),
            poll_interval=_setting("refresh", "poll_interval_seconds", 1.0),
            claim_timeout=_setting("refresh", "claim_timeout_seconds", 300.0),
        )

    @staticmethod
    def _load_backfill() -> BackfillSettings:
        return BackfillSettings(
            batch_size=_setting("backfill", "batch_size", 10, int),
            scan_limit=_setting("backfill", "scan_limit", 50, int),
            max_backlog=_setting("backfill", "max_backlog", 500, int),
            priority=_setting("backfill", "priority", 100, int),
        )

    def validate(self) -> None:
        if not self.api_key:
            raise ConfigError("BRAWLHALLA_API_KEY is required to run the sync worker.", key="BRAWLHALLA_API_KEY")


@lru_cache(maxsize=1)
def get_settings() -> SyncSettings:
    """Return cached settings instance."""

    return SyncSettings()


__all__ = [
    "Config",
    "LimiterSettings",
    "SweepSettings",
    "RefreshSettings",
    "BackfillSettings",
    "SyncSettings",
    "get_settings",
]
