"""Typed configuration objects backed by python-decouple settings."""

from __future__ import annotations

import json
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Final

from decouple import Config as DecoupleConfig, RepositoryEmpty, RepositoryEnv

__all__ = [
    "ApiKey",
    "BrowserSettings",
    "CrawlSettings",
    "RateLimitSettings",
    "RetentionSettings",
    "StorageSettings",
    "Settings",
    "load_config",
    "load_api_keys",
    "get_settings",
]


@dataclass(frozen=True, slots=True)
class BrowserSettings:
    """Render engine and capture protocol knobs."""

    playwright_channel: str
    executable_path: str | None
    max_concurrent_pages: int
    screenshot_timeout_ms: int
    shutdown_grace_ms: int
    scroll_step_px: int
    scroll_delay_ms: int
    settle_ms: int
    user_agent: str


@dataclass(frozen=True, slots=True)
class StorageSettings:
    """Filesystem + SQLite layout for artifacts."""

    cache_root: Path
    db_path: Path
    blob_backstop_hours: int


@dataclass(frozen=True, slots=True)
class CrawlSettings:
    """Sitemap discovery and site crawl limits."""

    concurrency: int
    fetch_timeout_s: float
    max_sitemap_depth: int
    default_max_pages: int
    user_agent: str


@dataclass(frozen=True, slots=True)
class RetentionSettings:
    """How long artifacts live and how often the sweeper runs."""

    artifact_ttl_hours: int
    cleanup_interval_ms: int
    sweep_batch_size: int


@dataclass(frozen=True, slots=True)
class ApiKey:
    """Static API key entry; ``rate_limit`` is a ``<count>/<second|minute>`` spec."""

    key: str
    name: str
    rate_limit: str = "10/second"
    enabled: bool = True


@dataclass(frozen=True, slots=True)
class RateLimitSettings:
    """Caller table consumed by the rate limiter dependency."""

    default_limit: str
    idle_window_s: int
    api_keys: tuple[ApiKey, ...]


@dataclass(frozen=True, slots=True)
class Settings:
    """Top-level immutable configuration container."""

    env_path: str
    log_level: str
    browser: BrowserSettings
    storage: StorageSettings
    crawl: CrawlSettings
    retention: RetentionSettings
    rate_limit: RateLimitSettings


def load_config(env_path: str = ".env") -> DecoupleConfig:
    """Return a python-decouple config anchored to the repository .env file.

    Environment variables always win; a missing ``.env`` leaves only the
    process environment.
    """

    if Path(env_path).is_file():
        return DecoupleConfig(RepositoryEnv(env_path))
    return DecoupleConfig(RepositoryEmpty())


def _int(cfg: DecoupleConfig, key: str, *, default: int) -> int:
    return cfg(key, cast=int, default=default)


def _float(cfg: DecoupleConfig, key: str, *, default: float) -> float:
    return cfg(key, cast=float, default=default)


def load_api_keys(
    cfg: DecoupleConfig, config_dir: Path, *, default_limit: str = "10/second"
) -> tuple[ApiKey, ...]:
    """Load API keys from ``API_KEYS`` (JSON array) or ``<config_dir>/api-keys.json``."""

    raw = cfg("API_KEYS", default="")
    if raw:
        try:
            entries = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Invalid API_KEYS env var: {exc}") from exc
        if not isinstance(entries, list):
            raise ValueError("Invalid API_KEYS env var: API_KEYS must be a JSON array")
        return tuple(_api_key(entry, default_limit) for entry in entries)

    path = config_dir / "api-keys.json"
    if not path.is_file():
        return tuple()
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid JSON in API keys file: {exc}") from exc
    keys = payload.get("keys") if isinstance(payload, dict) else None
    if not isinstance(keys, list):
        raise ValueError("Invalid API keys config: missing keys array")
    return tuple(_api_key(entry, default_limit) for entry in keys)


def _api_key(entry: object, default_limit: str) -> ApiKey:
    if not isinstance(entry, dict) or not entry.get("key") or not entry.get("name"):
        raise ValueError("API key entries need 'key' and 'name'")
    return ApiKey(
        key=str(entry["key"]),
        name=str(entry["name"]),
        rate_limit=str(entry.get("rateLimit") or entry.get("rate_limit") or default_limit),
        enabled=bool(entry.get("enabled", True)),
    )


@lru_cache(maxsize=1)
def get_settings(env_path: str = ".env") -> Settings:
    """Load and memoize structured settings for the current process."""

    cfg = load_config(env_path)

    max_pages = _int(cfg, "MAX_CONCURRENT_PAGES", default=3)
    if max_pages < 1:
        raise ValueError("MAX_CONCURRENT_PAGES must be >= 1")
    # Leave at least one session of headroom for single captures.
    crawl_concurrency = _int(cfg, "SITE_CRAWL_CONCURRENCY", default=2)
    if max_pages > 1:
        crawl_concurrency = min(crawl_concurrency, max_pages - 1)
    crawl_concurrency = max(1, crawl_concurrency)

    user_agent = cfg(
        "CAPTURE_USER_AGENT",
        default=(
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
        ),
    )
    browser = BrowserSettings(
        playwright_channel=cfg("PLAYWRIGHT_CHANNEL", default="chromium"),
        executable_path=cfg("CHROMIUM_EXECUTABLE_PATH", default=None),
        max_concurrent_pages=max_pages,
        screenshot_timeout_ms=_int(cfg, "SCREENSHOT_TIMEOUT_MS", default=30000),
        shutdown_grace_ms=_int(cfg, "POOL_SHUTDOWN_GRACE_MS", default=30000),
        scroll_step_px=_int(cfg, "SCROLL_STEP_PX", default=400),
        scroll_delay_ms=_int(cfg, "SCROLL_DELAY_MS", default=100),
        settle_ms=_int(cfg, "SCROLL_SETTLE_MS", default=500),
        user_agent=user_agent,
    )
    storage = StorageSettings(
        cache_root=Path(cfg("CACHE_ROOT", default=".cache")),
        db_path=Path(cfg("RUNS_DB_PATH", default="sitesnap.db")),
        blob_backstop_hours=_int(cfg, "BLOB_BACKSTOP_HOURS", default=24),
    )
    crawl = CrawlSettings(
        concurrency=crawl_concurrency,
        fetch_timeout_s=_float(cfg, "SITEMAP_FETCH_TIMEOUT_S", default=30.0),
        max_sitemap_depth=_int(cfg, "MAX_SITEMAP_DEPTH", default=3),
        default_max_pages=_int(cfg, "SITE_DEFAULT_MAX_PAGES", default=100),
        user_agent=cfg("SITEMAP_USER_AGENT", default="ScreenshotService/1.0 (Sitemap Crawler)"),
    )
    retention = RetentionSettings(
        artifact_ttl_hours=_int(cfg, "ARTIFACT_TTL_HOURS", default=24),
        cleanup_interval_ms=_int(cfg, "CLEANUP_INTERVAL_MS", default=3_600_000),
        sweep_batch_size=_int(cfg, "SWEEP_BATCH_SIZE", default=100),
    )
    default_limit = cfg("RATE_LIMIT_DEFAULT", default="10/second")
    rate_limit = RateLimitSettings(
        default_limit=default_limit,
        idle_window_s=_int(cfg, "RATE_LIMIT_IDLE_S", default=60),
        api_keys=load_api_keys(cfg, Path(cfg("CONFIG_DIR", default="config")), default_limit=default_limit),
    )

    return Settings(
        env_path=env_path,
        log_level=cfg("LOG_LEVEL", default="INFO").upper(),
        browser=browser,
        storage=storage,
        crawl=crawl,
        retention=retention,
        rate_limit=rate_limit,
    )


# Statically importable settings singleton for modules that prefer constants over DI.
settings: Final[Settings] = get_settings()
