"""Sitemap-driven site crawls: discovery, fan-out and progress tracking."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from sitesnap import metrics
from sitesnap.artifacts import ArtifactWriter
from sitesnap.capture import CaptureRequest, CaptureWorker
from sitesnap.errors import (
    CaptureError,
    PoolShuttingDownError,
    SitemapParseError,
    StorageError,
    ValidationError,
)
from sitesnap.sitemap import SitemapResolver, SitemapUrlEntry, extract_path, sort_by_path
from sitesnap.store import (
    ArtifactRecord,
    SiteJobFilters,
    SiteJobRecord,
    SiteJobStatus,
    Store,
    ttl_deadline,
)

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class SiteCrawlRequest:
    """Options for one sitemap-driven crawl."""

    root_url: str
    sitemap_url: Optional[str] = None
    viewport: str = "desktop"
    full_page: bool = True
    wait_time_ms: int = 2000
    max_pages: int = 100
    client_name: Optional[str] = None
    project_name: Optional[str] = None


@dataclass(frozen=True)
class SiteCrawlAck:
    """Returned as soon as the job record exists; work continues in the background."""

    job_id: str
    root_url: str
    sitemap_url: str
    status: str
    total_pages: int
    sitemap_errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "root_url": self.root_url,
            "sitemap_url": self.sitemap_url,
            "status": self.status,
            "total_pages": self.total_pages,
            "sitemap_errors": list(self.sitemap_errors),
        }


@dataclass
class SiteCrawlView:
    """A job record plus its stored pages keyed by path."""

    job: SiteJobRecord
    pages: Dict[str, ArtifactRecord]


class SiteCrawlOrchestrator:
    """Discovers a sitemap and fans capture work out over a fixed set of workers."""

    def __init__(
        self,
        store: Store,
        resolver: SitemapResolver,
        worker: CaptureWorker,
        writer: ArtifactWriter,
        *,
        concurrency: int = 2,
        ttl_hours: int = 24,
    ) -> None:
        self._store = store
        self._resolver = resolver
        self._worker = worker
        self._writer = writer
        self._concurrency = max(1, concurrency)
        self._ttl_hours = ttl_hours
        self._tasks: Dict[str, asyncio.Task[None]] = {}
        self._closing = False

    @property
    def concurrency(self) -> int:
        return self._concurrency

    def active_jobs(self) -> List[str]:
        return list(self._tasks)

    async def submit(self, request: SiteCrawlRequest) -> SiteCrawlAck:
        """Resolve the sitemap, create the job and start processing it.

        Raises:
            SitemapNotFoundError: no sitemap candidate answered.
            SitemapParseError: the sitemap produced no URLs.
            ValidationError: ``max_pages`` is not positive.
        """

        if request.max_pages < 1:
            raise ValidationError("max_pages must be >= 1")
        sitemap_url = await self._resolver.discover(request.root_url, request.sitemap_url)
        result = await self._resolver.collect(sitemap_url, request.max_pages)
        if not result.urls:
            raise SitemapParseError("Sitemap contains no URLs", errors=result.errors)

        entries = sort_by_path(result.urls)
        LOGGER.info(
            "Sitemap parsed successfully",
            extra={"sitemap_url": sitemap_url, "url_count": len(entries), "soft_errors": len(result.errors)},
        )

        record = SiteJobRecord(
            root_url=request.root_url,
            sitemap_url=sitemap_url,
            total_pages=len(entries),
            viewport=request.viewport,
            full_page=request.full_page,
            wait_time_ms=request.wait_time_ms,
            client_name=request.client_name,
            project_name=request.project_name,
            status=SiteJobStatus.PENDING.value,
            expires_at=ttl_deadline(self._ttl_hours),
        )
        record = await asyncio.to_thread(self._store.create_site_job, record)
        job_id = record.id
        await asyncio.to_thread(self._store.update_site_job_status, job_id, SiteJobStatus.PROCESSING)

        task = asyncio.create_task(self._run(job_id, entries, request), name=f"site-crawl-{job_id}")
        self._tasks[job_id] = task
        task.add_done_callback(lambda _task, job_id=job_id: self._tasks.pop(job_id, None))

        return SiteCrawlAck(
            job_id=job_id,
            root_url=request.root_url,
            sitemap_url=sitemap_url,
            status=SiteJobStatus.PROCESSING.value,
            total_pages=len(entries),
            sitemap_errors=list(result.errors),
        )

    async def wait(self, job_id: str) -> None:
        """Block until the background task for ``job_id`` finishes (if any)."""

        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def get_site_crawl(self, job_id: str) -> Optional[SiteCrawlView]:
        job = await asyncio.to_thread(self._store.get_site_job, job_id)
        if job is None:
            return None
        artifacts = await asyncio.to_thread(self._store.artifacts_for_site_job, job_id)
        pages = {extract_path(artifact.url, job.root_url): artifact for artifact in artifacts}
        return SiteCrawlView(job=job, pages=pages)

    async def list_site_crawls(self, filters: SiteJobFilters | None = None) -> tuple[list[SiteJobRecord], int]:
        return await asyncio.to_thread(self._store.list_site_jobs, filters)

    async def shutdown(self, grace_ms: int = 0) -> None:
        """Stop dequeuing, let in-flight captures finish within ``grace_ms``,
        then cancel what is left and mark every interrupted job failed."""

        self._closing = True
        tasks = dict(self._tasks)
        if not tasks:
            return
        if grace_ms > 0:
            LOGGER.info("Waiting for in-flight captures of %d site crawls", len(tasks))
            _, pending = await asyncio.wait(list(tasks.values()), timeout=grace_ms / 1000.0)
        else:
            pending = set(tasks.values())
        if pending:
            LOGGER.info("Cancelling %d running site crawls", len(pending))
            for task in pending:
                task.cancel()
        await asyncio.gather(*tasks.values(), return_exceptions=True)
        for job_id in tasks:
            await self._finish(job_id, SiteJobStatus.FAILED)

    async def _run(self, job_id: str, entries: Sequence[SitemapUrlEntry], request: SiteCrawlRequest) -> None:
        LOGGER.info(
            "Starting background capture",
            extra={"job_id": job_id, "total_urls": len(entries), "concurrency": self._concurrency},
        )
        try:
            await self._process(job_id, entries, request)
        except asyncio.CancelledError:
            LOGGER.warning("Site crawl %s cancelled", job_id)
            raise
        except Exception:
            LOGGER.exception("Background capture failed", extra={"job_id": job_id})
            await self._finish(job_id, SiteJobStatus.FAILED)

    async def _process(self, job_id: str, entries: Sequence[SitemapUrlEntry], request: SiteCrawlRequest) -> None:
        queue: asyncio.Queue[SitemapUrlEntry] = asyncio.Queue()
        for entry in entries:
            queue.put_nowait(entry)

        workers = [
            asyncio.create_task(self._drain(job_id, queue, request), name=f"site-crawl-{job_id}-worker-{index}")
            for index in range(min(self._concurrency, len(entries)))
        ]
        try:
            await asyncio.gather(*workers)
        except BaseException:
            for worker in workers:
                worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            raise

        if self._closing and not queue.empty():
            LOGGER.warning("Site crawl %s stopped before its queue drained", job_id)
            return
        job = await asyncio.to_thread(self._store.get_site_job, job_id)
        captured = job.captured_count if job else 0
        failed = job.failed_count if job else 0
        status = SiteJobStatus.COMPLETED if captured > 0 else SiteJobStatus.FAILED
        await self._finish(job_id, status)
        LOGGER.info(
            "Background capture completed",
            extra={"job_id": job_id, "captured": captured, "failed": failed, "status": status.value},
        )

    async def _drain(self, job_id: str, queue: asyncio.Queue[SitemapUrlEntry], request: SiteCrawlRequest) -> None:
        while not self._closing:
            try:
                entry = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            captured = await self._capture_one(job_id, entry.loc, request)
            await asyncio.to_thread(self._store.increment_site_job, job_id, captured=captured)
            queue.task_done()

    async def _capture_one(self, job_id: str, url: str, request: SiteCrawlRequest) -> bool:
        capture = CaptureRequest(
            url=url,
            viewport=request.viewport,
            full_page=request.full_page,
            wait_time_ms=request.wait_time_ms,
            site_job_id=job_id,
            client_name=request.client_name,
            project_name=request.project_name,
        )
        try:
            image = await self._worker.capture_request(capture)
            await self._writer.save(capture, image)
        except (CaptureError, StorageError, PoolShuttingDownError) as exc:
            LOGGER.error("Failed to capture page", extra={"job_id": job_id, "url": url, "error": str(exc)})
            return False
        return True

    async def _finish(self, job_id: str, status: SiteJobStatus) -> None:
        try:
            moved = await asyncio.to_thread(self._store.complete_site_job, job_id, status)
        except Exception as exc:
            LOGGER.error("Failed to finalise site job %s: %s", job_id, exc)
            return
        if moved:
            metrics.record_site_job_completion(status.value)


__all__ = [
    "SiteCrawlAck",
    "SiteCrawlOrchestrator",
    "SiteCrawlRequest",
    "SiteCrawlView",
]
