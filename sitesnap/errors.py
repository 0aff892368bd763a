"""Exception taxonomy shared by the pool, capture, crawl and storage layers."""

from __future__ import annotations

from typing import Sequence


class SitesnapError(Exception):
    """Base class for every error raised by the service."""


class ValidationError(SitesnapError):
    """Malformed caller input, rejected before any resource is touched."""


class CaptureError(SitesnapError):
    """Navigation timeout, render-engine failure or an unusable URL."""

    def __init__(self, url: str, message: str) -> None:
        super().__init__(f"Failed to capture {url}: {message}")
        self.url = url
        self.reason = message


class SitemapNotFoundError(SitesnapError):
    """No sitemap candidate could be fetched."""

    def __init__(self, tried: Sequence[str]) -> None:
        self.tried = list(tried)
        super().__init__(f"No sitemap found. Tried: {', '.join(self.tried)}")


class SitemapParseError(SitesnapError):
    """A sitemap document was unreadable or produced no URLs."""

    def __init__(self, message: str, *, errors: Sequence[str] = ()) -> None:
        super().__init__(message)
        self.errors = list(errors)


class StorageError(SitesnapError):
    """Blob or metadata store failure."""


class PoolShuttingDownError(SitesnapError):
    """Raised for leases queued or requested while the pool is closing."""

    def __init__(self, message: str = "Render session pool is closing") -> None:
        super().__init__(message)


class RateLimitExceeded(SitesnapError):
    """Admission control rejected the caller; not a fault."""

    def __init__(self, *, limit: int, retry_after_seconds: int) -> None:
        super().__init__(f"Rate limit exceeded. Limit: {limit}. Retry after {retry_after_seconds}s")
        self.limit = limit
        self.retry_after_seconds = retry_after_seconds


__all__ = [
    "SitesnapError",
    "ValidationError",
    "CaptureError",
    "SitemapNotFoundError",
    "SitemapParseError",
    "StorageError",
    "PoolShuttingDownError",
    "RateLimitExceeded",
]
