from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from sitesnap.artifacts import ArtifactWriter
from sitesnap.blobs import BlobStore
from sitesnap.capture import CapturePolicy, CaptureWorker
from sitesnap.crawler import SiteCrawlOrchestrator, SiteCrawlRequest
from sitesnap.errors import SitemapNotFoundError, SitemapParseError, ValidationError
from sitesnap.pool import RenderSessionPool
from sitesnap.sitemap import SitemapResolver
from sitesnap.store import SiteJobFilters, SiteJobStatus, StorageConfig, Store
from tests.fakes import FakeEngine, mock_client, urlset

BASE = "https://example.com"
PAGES = [f"{BASE}/", f"{BASE}/about", f"{BASE}/blog", f"{BASE}/contact", f"{BASE}/pricing", f"{BASE}/team"]
QUICK = CapturePolicy(timeout_ms=1000, scroll_step_px=400, scroll_delay_ms=0, settle_ms=0)


class Harness:
    def __init__(self, tmp_path: Path, routes: dict[str, tuple[int, str]], *, concurrency: int) -> None:
        self.store = Store(StorageConfig(cache_root=tmp_path / "cache", db_path=tmp_path / "sitesnap.db"))
        self.blobs = BlobStore(tmp_path / "blobs")
        self.engine = FakeEngine()
        self.pool = RenderSessionPool(self.engine, max_sessions=concurrency + 1, shutdown_grace_ms=100)
        self.client = mock_client(routes)
        self.orchestrator = SiteCrawlOrchestrator(
            self.store,
            SitemapResolver(self.client),
            CaptureWorker(self.pool, QUICK),
            ArtifactWriter(self.store, self.blobs),
            concurrency=concurrency,
        )

    async def __aenter__(self) -> "Harness":
        await self.pool.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.orchestrator.shutdown()
        await self.pool.shutdown()
        await self.client.aclose()


def _routes(*pages: str) -> dict[str, tuple[int, str]]:
    return {f"{BASE}/sitemap.xml": (200, urlset(*pages))}


@pytest.mark.asyncio
@pytest.mark.parametrize("concurrency", [1, 2, 4])
async def test_counters_cover_every_page_for_any_worker_count(tmp_path: Path, concurrency: int):
    async with Harness(tmp_path, _routes(*PAGES), concurrency=concurrency) as harness:
        harness.engine.fail_urls[f"{BASE}/blog"] = RuntimeError("net::ERR_CONNECTION_RESET")
        harness.engine.fail_urls[f"{BASE}/team"] = RuntimeError("net::ERR_CONNECTION_RESET")

        ack = await harness.orchestrator.submit(SiteCrawlRequest(root_url=BASE))
        assert ack.status == SiteJobStatus.PROCESSING.value
        assert ack.total_pages == len(PAGES)
        await harness.orchestrator.wait(ack.job_id)

        job = harness.store.get_site_job(ack.job_id)
        assert job is not None
        assert job.status == SiteJobStatus.COMPLETED.value
        assert job.captured_count == 4
        assert job.failed_count == 2
        assert job.captured_count + job.failed_count == job.total_pages
        assert job.completed_at is not None
        assert harness.engine.peak_sessions <= concurrency


@pytest.mark.asyncio
async def test_job_fails_only_when_nothing_was_captured(tmp_path: Path):
    pages = [f"{BASE}/a", f"{BASE}/b"]
    async with Harness(tmp_path, _routes(*pages), concurrency=2) as harness:
        for page in pages:
            harness.engine.fail_urls[page] = RuntimeError("boom")

        ack = await harness.orchestrator.submit(SiteCrawlRequest(root_url=BASE))
        await harness.orchestrator.wait(ack.job_id)

        job = harness.store.get_site_job(ack.job_id)
        assert job is not None
        assert job.status == SiteJobStatus.FAILED.value
        assert job.failed_count == 2


@pytest.mark.asyncio
async def test_site_view_maps_paths_to_artifacts(tmp_path: Path):
    pages = [f"{BASE}/pricing", f"{BASE}/", f"{BASE}/about"]
    async with Harness(tmp_path, _routes(*pages), concurrency=2) as harness:
        ack = await harness.orchestrator.submit(
            SiteCrawlRequest(root_url=BASE, viewport="mobile", client_name="acme", max_pages=2)
        )
        assert ack.total_pages == 2
        await harness.orchestrator.wait(ack.job_id)

        view = await harness.orchestrator.get_site_crawl(ack.job_id)
        assert view is not None
        assert set(view.pages) == {"/pricing", "/"}
        assert all(record.viewport == "mobile" for record in view.pages.values())
        assert all(harness.blobs.exists(record.storage_key) for record in view.pages.values())

        jobs, total = await harness.orchestrator.list_site_crawls(SiteJobFilters(client_name="acme"))
        assert total == 1 and jobs[0].id == ack.job_id
        assert await harness.orchestrator.get_site_crawl("missing") is None


@pytest.mark.asyncio
async def test_empty_sitemap_is_rejected_without_creating_a_job(tmp_path: Path):
    async with Harness(tmp_path, _routes(), concurrency=1) as harness:
        with pytest.raises(SitemapParseError):
            await harness.orchestrator.submit(SiteCrawlRequest(root_url=BASE))
        _, total = harness.store.list_site_jobs(SiteJobFilters(include_expired=True))
        assert total == 0


@pytest.mark.asyncio
async def test_missing_sitemap_and_bad_budget_are_rejected(tmp_path: Path):
    async with Harness(tmp_path, {}, concurrency=1) as harness:
        with pytest.raises(SitemapNotFoundError):
            await harness.orchestrator.submit(SiteCrawlRequest(root_url=BASE))
        with pytest.raises(ValidationError):
            await harness.orchestrator.submit(SiteCrawlRequest(root_url=BASE, max_pages=0))


@pytest.mark.asyncio
async def test_shutdown_marks_running_jobs_failed(tmp_path: Path):
    async with Harness(tmp_path, _routes(*PAGES), concurrency=2) as harness:
        harness.engine.block = asyncio.Event()
        ack = await harness.orchestrator.submit(SiteCrawlRequest(root_url=BASE))
        for _ in range(20):
            if harness.engine.sessions:
                break
            await asyncio.sleep(0.01)
        assert ack.job_id in harness.orchestrator.active_jobs()
        running = harness.store.get_site_job(ack.job_id)
        assert running is not None
        assert running.status == SiteJobStatus.PROCESSING.value
        assert running.completed_at is None

        await harness.orchestrator.shutdown()

        job = harness.store.get_site_job(ack.job_id)
        assert job is not None
        assert job.status == SiteJobStatus.FAILED.value
        assert harness.pool.stats().active_sessions == 0


@pytest.mark.asyncio
async def test_shutdown_lets_in_flight_captures_finish_within_grace(tmp_path: Path):
    async with Harness(tmp_path, _routes(*PAGES), concurrency=2) as harness:
        harness.engine.block = asyncio.Event()
        ack = await harness.orchestrator.submit(SiteCrawlRequest(root_url=BASE))
        for _ in range(20):
            if len(harness.engine.sessions) == 2:
                break
            await asyncio.sleep(0.01)
        assert len(harness.engine.sessions) == 2

        closing = asyncio.create_task(harness.orchestrator.shutdown(grace_ms=1000))
        await asyncio.sleep(0.01)
        assert not closing.done()
        harness.engine.block.set()
        await asyncio.wait_for(closing, timeout=1)

        job = harness.store.get_site_job(ack.job_id)
        assert job is not None
        assert job.status == SiteJobStatus.FAILED.value
        assert job.captured_count == 2
        assert job.failed_count == 0
        assert len(harness.engine.sessions) == 2
        view = await harness.orchestrator.get_site_crawl(ack.job_id)
        assert view is not None and len(view.pages) == 2
