"""Facade wiring the pool, capture worker, crawler, limiter and sweeper together."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

from sitesnap.artifacts import ArtifactWriter
from sitesnap.auth import ApiKeyTable
from sitesnap.blobs import BlobStore
from sitesnap.browser import PlaywrightEngine, RenderEngine
from sitesnap.capture import CapturePolicy, CaptureRequest, CaptureWorker
from sitesnap.crawler import SiteCrawlAck, SiteCrawlOrchestrator, SiteCrawlRequest, SiteCrawlView
from sitesnap.errors import CaptureError, PoolShuttingDownError, StorageError, ValidationError
from sitesnap.pool import PoolStats, RenderSessionPool
from sitesnap.rate_limit import SlidingWindowRateLimiter
from sitesnap.settings import Settings, get_settings
from sitesnap.sitemap import SitemapResolver
from sitesnap.store import (
    ArtifactFilters,
    ArtifactRecord,
    ArtifactStatus,
    SiteJobFilters,
    SiteJobRecord,
    StorageConfig,
    Store,
    build_store,
)
from sitesnap.sweeper import ExpirySweeper

LOGGER = logging.getLogger(__name__)


@dataclass
class CaptureFailureInfo:
    url: str
    error: str


class ScreenshotService:
    """Everything the HTTP layer needs, with an ordered startup and shutdown."""

    def __init__(
        self,
        settings: Settings,
        *,
        store: Store,
        blobs: BlobStore,
        engine: RenderEngine,
        resolver: SitemapResolver | None = None,
        limiter: SlidingWindowRateLimiter | None = None,
        api_keys: ApiKeyTable | None = None,
        capture_policy: CapturePolicy | None = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.blobs = blobs
        self.engine = engine
        self.pool = RenderSessionPool(
            engine,
            max_sessions=settings.browser.max_concurrent_pages,
            shutdown_grace_ms=settings.browser.shutdown_grace_ms,
        )
        self.worker = CaptureWorker(self.pool, capture_policy or CapturePolicy.from_settings(settings.browser))
        self.writer = ArtifactWriter(store, blobs, ttl_hours=settings.retention.artifact_ttl_hours)
        self.resolver = resolver or SitemapResolver(
            timeout_s=settings.crawl.fetch_timeout_s,
            user_agent=settings.crawl.user_agent,
            max_depth=settings.crawl.max_sitemap_depth,
        )
        self.crawler = SiteCrawlOrchestrator(
            store,
            self.resolver,
            self.worker,
            self.writer,
            concurrency=settings.crawl.concurrency,
            ttl_hours=settings.retention.artifact_ttl_hours,
        )
        self.rate_limiter = limiter or SlidingWindowRateLimiter(idle_window_s=settings.rate_limit.idle_window_s)
        self.api_keys = api_keys if api_keys is not None else ApiKeyTable(settings.rate_limit.api_keys)
        self.sweeper = ExpirySweeper(
            store,
            blobs,
            limiter=self.rate_limiter,
            interval_ms=settings.retention.cleanup_interval_ms,
            batch_size=settings.retention.sweep_batch_size,
            blob_backstop_hours=settings.storage.blob_backstop_hours,
        )
        self._accepting = False

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> ScreenshotService:
        active = settings or get_settings()
        config = StorageConfig(cache_root=active.storage.cache_root, db_path=active.storage.db_path)
        return cls(
            active,
            store=build_store(config),
            blobs=BlobStore(config.blob_root),
            engine=PlaywrightEngine(active.browser),
        )

    async def startup(self, *, start_sweeper: bool = True) -> None:
        LOGGER.info(
            "Starting screenshot service",
            extra={
                "max_concurrent_pages": self.pool.ceiling,
                "crawl_concurrency": self.crawler.concurrency,
                "api_keys": len(self.api_keys),
            },
        )
        await self.pool.start()
        if start_sweeper:
            self.sweeper.start()
        self._accepting = True

    async def shutdown(self) -> None:
        """Stop admitting work, then tear down in dependency order."""

        self._accepting = False
        await self.sweeper.stop()
        await self.crawler.shutdown(grace_ms=self.settings.browser.shutdown_grace_ms)
        await self.pool.shutdown()
        await self.resolver.aclose()
        await asyncio.to_thread(self.store.close)
        LOGGER.info("Screenshot service stopped")

    def _ensure_accepting(self) -> None:
        if not self._accepting:
            raise PoolShuttingDownError("Service is not accepting new work")

    # Captures -------------------------------------------------------------------

    async def submit_capture(self, request: CaptureRequest) -> ArtifactRecord:
        self._ensure_accepting()
        image = await self.worker.capture_request(request)
        return await self.writer.save(request, image)

    async def submit_captures(
        self, requests: Sequence[CaptureRequest]
    ) -> Tuple[list[ArtifactRecord], list[CaptureFailureInfo]]:
        """Capture every request; one URL failing never aborts the others."""

        self._ensure_accepting()
        if not requests:
            raise ValidationError("At least one URL is required")
        outcomes = await asyncio.gather(
            *(self.submit_capture(request) for request in requests),
            return_exceptions=True,
        )
        saved: list[ArtifactRecord] = []
        failed: list[CaptureFailureInfo] = []
        for request, outcome in zip(requests, outcomes):
            if isinstance(outcome, ArtifactRecord):
                saved.append(outcome)
            elif isinstance(outcome, CaptureError):
                failed.append(CaptureFailureInfo(url=request.url, error=outcome.reason))
            elif isinstance(outcome, StorageError):
                failed.append(CaptureFailureInfo(url=request.url, error=str(outcome)))
            elif isinstance(outcome, BaseException):
                raise outcome
        LOGGER.info("Screenshot request completed", extra={"success": len(saved), "failed": len(failed)})
        return saved, failed

    # Site crawls ----------------------------------------------------------------

    async def submit_site_crawl(self, request: SiteCrawlRequest) -> SiteCrawlAck:
        self._ensure_accepting()
        return await self.crawler.submit(request)

    async def get_site_crawl(self, job_id: str) -> Optional[SiteCrawlView]:
        return await self.crawler.get_site_crawl(job_id)

    async def list_site_crawls(self, filters: SiteJobFilters | None = None) -> tuple[list[SiteJobRecord], int]:
        return await self.crawler.list_site_crawls(filters)

    # Artifacts ------------------------------------------------------------------

    async def get_artifact(self, artifact_id: str) -> Optional[ArtifactRecord]:
        return await asyncio.to_thread(self.store.get_artifact, artifact_id)

    async def read_artifact_bytes(self, artifact_id: str) -> Optional[Tuple[ArtifactRecord, bytes]]:
        record = await self.get_artifact(artifact_id)
        if record is None or record.status != ArtifactStatus.COMPLETED.value:
            return None
        try:
            data = await asyncio.to_thread(self.blobs.get, record.storage_key)
        except FileNotFoundError:
            LOGGER.warning("Blob missing for artifact %s (%s)", artifact_id, record.storage_key)
            return None
        await asyncio.to_thread(self.store.mark_downloaded, artifact_id)
        return record, data

    async def list_artifacts(self, filters: ArtifactFilters | None = None) -> tuple[list[ArtifactRecord], int]:
        return await asyncio.to_thread(self.store.list_artifacts, filters)

    async def delete_artifact(self, artifact_id: str, immediate: bool = False) -> bool:
        """Delete now, or mark ``expired`` so the next sweep reclaims it."""

        record = await self.get_artifact(artifact_id)
        if record is None:
            return False
        if not immediate:
            await asyncio.to_thread(self.store.update_artifact_status, artifact_id, ArtifactStatus.EXPIRED)
            LOGGER.info("Artifact marked for deletion", extra={"artifact_id": artifact_id})
            return True
        try:
            await asyncio.to_thread(self.blobs.delete, record.storage_key)
        except StorageError as exc:
            LOGGER.warning("Failed to delete blob for artifact %s: %s", artifact_id, exc)
        await asyncio.to_thread(self.store.delete_artifact, artifact_id)
        LOGGER.info("Artifact deleted immediately", extra={"artifact_id": artifact_id})
        return True

    # Health ---------------------------------------------------------------------

    async def is_database_healthy(self) -> bool:
        return await asyncio.to_thread(self.store.ping)

    async def is_storage_healthy(self) -> bool:
        return await asyncio.to_thread(self.blobs.ping)

    def is_render_engine_healthy(self) -> bool:
        return self.engine.is_connected() and not self.pool.closing

    def pool_stats(self) -> PoolStats:
        return self.pool.stats()


__all__ = ["CaptureFailureInfo", "ScreenshotService"]
