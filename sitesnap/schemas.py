"""Pydantic DTOs shared across endpoints."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal
from urllib.parse import urlparse

from pydantic import BaseModel, Field, field_serializer, field_validator

Viewport = Literal["desktop", "mobile"]
SiteStatus = Literal["pending", "processing", "completed", "failed"]


def _require_http_url(value: str) -> str:
    parsed = urlparse(value)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError(f"{value!r} is not an absolute http(s) URL")
    return value


def _as_utc(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


class ScreenshotRequest(BaseModel):
    """Payload clients submit to capture one or more pages."""

    urls: list[str] = Field(min_length=1, max_length=10, description="Pages to capture")
    viewport: Viewport = Field(default="desktop", description="Viewport preset")
    full_page: bool = Field(default=True, description="Capture the whole scroll height")
    wait_time_ms: int = Field(default=2000, ge=0, le=30000, description="Extra wait before the snapshot")
    client_name: str | None = Field(default=None, max_length=100)
    project_name: str | None = Field(default=None, max_length=100)
    tags: list[str] = Field(default_factory=list, max_length=10)

    @field_validator("urls")
    @classmethod
    def _check_urls(cls, value: list[str]) -> list[str]:
        return [_require_http_url(url) for url in value]

    @field_validator("tags")
    @classmethod
    def _check_tags(cls, value: list[str]) -> list[str]:
        for tag in value:
            if len(tag) > 50:
                raise ValueError("tags must be at most 50 characters")
        return value


class SiteCrawlCreateRequest(BaseModel):
    """Payload for a sitemap-driven crawl."""

    url: str = Field(description="Site root used for sitemap discovery")
    sitemap_url: str | None = Field(default=None, description="Sitemap to try before the defaults")
    viewport: Viewport = "desktop"
    full_page: bool = True
    wait_time_ms: int = Field(default=2000, ge=0, le=30000)
    max_pages: int | None = Field(
        default=None, ge=1, le=500, description="Page budget; SITE_DEFAULT_MAX_PAGES when omitted"
    )
    client_name: str | None = Field(default=None, max_length=100)
    project_name: str | None = Field(default=None, max_length=100)

    @field_validator("url")
    @classmethod
    def _check_url(cls, value: str) -> str:
        return _require_http_url(value)

    @field_validator("sitemap_url")
    @classmethod
    def _check_sitemap_url(cls, value: str | None) -> str | None:
        return _require_http_url(value) if value else value


class ArtifactResponse(BaseModel):
    """Metadata for one stored screenshot."""

    id: str
    url: str
    filename: str
    download_url: str
    viewport: str
    full_page: bool
    size_bytes: int
    mime_type: str
    client_name: str | None = None
    project_name: str | None = None
    tags: list[str] = Field(default_factory=list)
    site_job_id: str | None = None
    status: str
    created_at: datetime
    expires_at: datetime
    downloaded_at: datetime | None = None

    @field_serializer("created_at", "expires_at", "downloaded_at")
    def _serialize_time(self, value: datetime | None) -> str | None:
        return _as_utc(value)


class CaptureFailure(BaseModel):
    url: str
    error: str


class ScreenshotBatchResponse(BaseModel):
    """Per-URL outcome of ``POST /screenshot``."""

    success: bool
    screenshots: list[ArtifactResponse]
    failed: list[CaptureFailure]


class ArtifactListResponse(BaseModel):
    screenshots: list[ArtifactResponse]
    total: int
    limit: int
    offset: int


class SiteCrawlAckResponse(BaseModel):
    """Returned with 202 while the crawl runs in the background."""

    job_id: str
    root_url: str
    sitemap_url: str
    status: str
    total_pages: int
    sitemap_errors: list[str] = Field(default_factory=list)
    message: str


class SitePageResponse(BaseModel):
    id: str
    url: str
    path: str
    download_url: str
    size_bytes: int


class SiteCrawlResponse(BaseModel):
    """Progress view for ``GET /site/{id}``."""

    id: str
    root_url: str
    sitemap_url: str | None
    total_pages: int
    captured_count: int
    failed_count: int
    unique_paths: int
    viewport: str
    status: str
    created_at: datetime
    completed_at: datetime | None = None
    expires_at: datetime
    pages: dict[str, SitePageResponse] = Field(default_factory=dict)

    @field_serializer("created_at", "completed_at", "expires_at")
    def _serialize_time(self, value: datetime | None) -> str | None:
        return _as_utc(value)


class SiteCrawlListResponse(BaseModel):
    sites: list[SiteCrawlResponse]
    total: int
    limit: int
    offset: int


class DeleteResponse(BaseModel):
    id: str
    deleted: bool
    immediate: bool


class PoolStatsResponse(BaseModel):
    active_sessions: int
    queue_length: int
    ceiling: int
    connected: bool


class HealthResponse(BaseModel):
    """Aggregate health; ``degraded`` means storage or the engine is unhealthy."""

    status: Literal["healthy", "degraded", "unhealthy"]
    timestamp: str
    services: dict[str, str]
    pool: PoolStatsResponse | None = None
