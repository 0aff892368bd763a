"""Entry point for the FastAPI application."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from prometheus_fastapi_instrumentator import Instrumentator

from sitesnap.capture import CaptureRequest
from sitesnap.crawler import SiteCrawlRequest, SiteCrawlView
from sitesnap.errors import (
    PoolShuttingDownError,
    RateLimitExceeded,
    SitemapNotFoundError,
    SitemapParseError,
    StorageError,
    ValidationError,
)
from sitesnap.rate_limit import enforce_rate_limit
from sitesnap.schemas import (
    ArtifactListResponse,
    ArtifactResponse,
    CaptureFailure,
    DeleteResponse,
    HealthResponse,
    PoolStatsResponse,
    ScreenshotBatchResponse,
    ScreenshotRequest,
    SiteCrawlAckResponse,
    SiteCrawlCreateRequest,
    SiteCrawlListResponse,
    SiteCrawlResponse,
    SitePageResponse,
    SiteStatus,
)
from sitesnap.service import ScreenshotService
from sitesnap.settings import get_settings
from sitesnap.store import ArtifactFilters, ArtifactRecord, SiteJobFilters, SiteJobRecord

LOGGER = logging.getLogger(__name__)


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def create_app(service: ScreenshotService | None = None, *, start_sweeper: bool = True) -> FastAPI:
    """Build the app; tests pass a service wired with fakes."""

    @asynccontextmanager
    async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
        active = service or ScreenshotService.from_settings()
        _configure_logging(active.settings.log_level)
        app.state.service = active
        await active.startup(start_sweeper=start_sweeper)
        try:
            yield
        finally:
            await active.shutdown()

    app = FastAPI(title="Sitesnap", lifespan=_lifespan)
    _register_error_handlers(app)
    _register_routes(app)

    instrumentator = Instrumentator()
    instrumentator.instrument(app)
    try:
        instrumentator.expose(app, include_in_schema=False, should_gzip=True)
    except ValueError:  # pragma: no cover - already registered
        LOGGER.debug("Prometheus /metrics endpoint already exposed")
    return app


def _service(request: Request) -> ScreenshotService:
    return request.app.state.service


def _artifact_response(record: ArtifactRecord) -> ArtifactResponse:
    return ArtifactResponse(
        id=record.id,
        url=record.url,
        filename=record.filename,
        download_url=f"/screenshot/{record.id}/download",
        viewport=record.viewport,
        full_page=record.full_page,
        size_bytes=record.size_bytes,
        mime_type=record.mime_type,
        client_name=record.client_name,
        project_name=record.project_name,
        tags=list(record.tags or []),
        site_job_id=record.site_job_id,
        status=record.status,
        created_at=record.created_at,
        expires_at=record.expires_at,
        downloaded_at=record.downloaded_at,
    )


def _site_response(job: SiteJobRecord, view: SiteCrawlView | None = None) -> SiteCrawlResponse:
    pages = {}
    if view is not None:
        pages = {
            path: SitePageResponse(
                id=artifact.id,
                url=artifact.url,
                path=path,
                download_url=f"/screenshot/{artifact.id}/download",
                size_bytes=artifact.size_bytes,
            )
            for path, artifact in view.pages.items()
        }
    return SiteCrawlResponse(
        id=job.id,
        root_url=job.root_url,
        sitemap_url=job.sitemap_url,
        total_pages=job.total_pages,
        captured_count=job.captured_count,
        failed_count=job.failed_count,
        unique_paths=len(pages),
        viewport=job.viewport,
        status=job.status,
        created_at=job.created_at,
        completed_at=job.completed_at,
        expires_at=job.expires_at,
        pages=pages,
    )


def _error(status_code: int, error: str, message: str, **extra: object) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": error, "message": message, **extra})


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(RequestValidationError)
    async def _on_request_validation(_: Request, exc: RequestValidationError) -> JSONResponse:
        return _error(400, "Validation Error", "Invalid request", details=_validation_details(exc))

    @app.exception_handler(ValidationError)
    async def _on_validation(_: Request, exc: ValidationError) -> JSONResponse:
        return _error(400, "Validation Error", str(exc))

    @app.exception_handler(SitemapNotFoundError)
    async def _on_sitemap_missing(_: Request, exc: SitemapNotFoundError) -> JSONResponse:
        return _error(400, "Sitemap Not Found", str(exc), tried=exc.tried)

    @app.exception_handler(SitemapParseError)
    async def _on_sitemap_parse(_: Request, exc: SitemapParseError) -> JSONResponse:
        return _error(400, "Empty Sitemap", str(exc), sitemap_errors=exc.errors)

    @app.exception_handler(RateLimitExceeded)
    async def _on_rate_limit(_: Request, exc: RateLimitExceeded) -> JSONResponse:
        response = _error(429, "Too Many Requests", str(exc), retry_after=exc.retry_after_seconds)
        response.headers["Retry-After"] = str(exc.retry_after_seconds)
        response.headers["X-RateLimit-Limit"] = str(exc.limit)
        response.headers["X-RateLimit-Remaining"] = "0"
        return response

    @app.exception_handler(PoolShuttingDownError)
    async def _on_shutdown(_: Request, exc: PoolShuttingDownError) -> JSONResponse:
        return _error(503, "Service Unavailable", str(exc))

    @app.exception_handler(StorageError)
    async def _on_storage(_: Request, exc: StorageError) -> JSONResponse:
        LOGGER.error("Storage failure: %s", exc)
        return _error(500, "Internal Server Error", "Storage failure")


def _validation_details(exc: RequestValidationError) -> list[dict[str, object]]:
    return [
        {"loc": list(error.get("loc", ())), "msg": str(error.get("msg", "")), "type": str(error.get("type", ""))}
        for error in exc.errors()
    ]


def _register_routes(app: FastAPI) -> None:
    limited = [Depends(enforce_rate_limit)]

    @app.post("/screenshot", response_model=ScreenshotBatchResponse, dependencies=limited)
    async def create_screenshots(payload: ScreenshotRequest, request: Request) -> ScreenshotBatchResponse:
        service = _service(request)
        requests = [
            CaptureRequest(
                url=url,
                viewport=payload.viewport,
                full_page=payload.full_page,
                wait_time_ms=payload.wait_time_ms,
                client_name=payload.client_name,
                project_name=payload.project_name,
                tags=tuple(payload.tags),
            )
            for url in payload.urls
        ]
        saved, failed = await service.submit_captures(requests)
        return ScreenshotBatchResponse(
            success=bool(saved),
            screenshots=[_artifact_response(record) for record in saved],
            failed=[CaptureFailure(url=item.url, error=item.error) for item in failed],
        )

    @app.get("/screenshot/{artifact_id}", response_model=ArtifactResponse, dependencies=limited)
    async def fetch_screenshot(artifact_id: str, request: Request) -> ArtifactResponse:
        record = await _service(request).get_artifact(artifact_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Screenshot not found")
        return _artifact_response(record)

    @app.get("/screenshot/{artifact_id}/download", dependencies=limited)
    async def download_screenshot(artifact_id: str, request: Request) -> Response:
        result = await _service(request).read_artifact_bytes(artifact_id)
        if result is None:
            raise HTTPException(status_code=404, detail="Screenshot not found")
        record, data = result
        return Response(
            content=data,
            media_type=record.mime_type,
            headers={"Content-Disposition": f'attachment; filename="{record.filename}"'},
        )

    @app.delete("/screenshot/{artifact_id}", response_model=DeleteResponse, dependencies=limited)
    async def delete_screenshot(
        artifact_id: str,
        request: Request,
        immediate: bool = Query(default=False),
    ) -> DeleteResponse:
        deleted = await _service(request).delete_artifact(artifact_id, immediate=immediate)
        if not deleted:
            raise HTTPException(status_code=404, detail="Screenshot not found")
        return DeleteResponse(id=artifact_id, deleted=True, immediate=immediate)

    @app.get("/screenshots", response_model=ArtifactListResponse, dependencies=limited)
    async def list_screenshots(
        request: Request,
        client_name: Optional[str] = None,
        project_name: Optional[str] = None,
        site_job_id: Optional[str] = None,
        include_expired: bool = False,
        limit: int = Query(default=50, ge=1, le=100),
        offset: int = Query(default=0, ge=0),
    ) -> ArtifactListResponse:
        filters = ArtifactFilters(
            client_name=client_name,
            project_name=project_name,
            site_job_id=site_job_id,
            include_expired=include_expired,
            limit=limit,
            offset=offset,
        )
        records, total = await _service(request).list_artifacts(filters)
        return ArtifactListResponse(
            screenshots=[_artifact_response(record) for record in records],
            total=total,
            limit=limit,
            offset=offset,
        )

    @app.post(
        "/site",
        response_model=SiteCrawlAckResponse,
        status_code=status.HTTP_202_ACCEPTED,
        dependencies=limited,
    )
    async def create_site_crawl(payload: SiteCrawlCreateRequest, request: Request) -> SiteCrawlAckResponse:
        service = _service(request)
        max_pages = payload.max_pages or service.settings.crawl.default_max_pages
        ack = await service.submit_site_crawl(
            SiteCrawlRequest(
                root_url=payload.url,
                sitemap_url=payload.sitemap_url,
                viewport=payload.viewport,
                full_page=payload.full_page,
                wait_time_ms=payload.wait_time_ms,
                max_pages=max_pages,
                client_name=payload.client_name,
                project_name=payload.project_name,
            )
        )
        return SiteCrawlAckResponse(
            **ack.to_dict(),
            message=f"Site crawl started. Poll GET /site/{ack.job_id} for progress.",
        )

    @app.get("/site/{job_id}", response_model=SiteCrawlResponse, dependencies=limited)
    async def fetch_site_crawl(job_id: str, request: Request) -> SiteCrawlResponse:
        view = await _service(request).get_site_crawl(job_id)
        if view is None:
            raise HTTPException(status_code=404, detail="Site crawl not found")
        return _site_response(view.job, view)

    @app.get("/sites", response_model=SiteCrawlListResponse, dependencies=limited)
    async def list_site_crawls(
        request: Request,
        client_name: Optional[str] = None,
        project_name: Optional[str] = None,
        status_filter: Optional[SiteStatus] = Query(default=None, alias="status"),
        include_expired: bool = False,
        limit: int = Query(default=50, ge=1, le=100),
        offset: int = Query(default=0, ge=0),
    ) -> SiteCrawlListResponse:
        filters = SiteJobFilters(
            client_name=client_name,
            project_name=project_name,
            status=status_filter,
            include_expired=include_expired,
            limit=limit,
            offset=offset,
        )
        jobs, total = await _service(request).list_site_crawls(filters)
        return SiteCrawlListResponse(
            sites=[_site_response(job) for job in jobs],
            total=total,
            limit=limit,
            offset=offset,
        )

    @app.get("/health", tags=["health"], response_model=HealthResponse)
    async def healthcheck(request: Request) -> JSONResponse:
        service = _service(request)
        database = await service.is_database_healthy()
        storage = await service.is_storage_healthy()
        engine = service.is_render_engine_healthy()
        checks = {"database": database, "storage": storage, "render_engine": engine}
        if all(checks.values()):
            overall = "healthy"
        elif any(checks.values()):
            overall = "degraded"
        else:
            overall = "unhealthy"
        stats = service.pool_stats()
        body = HealthResponse(
            status=overall,
            timestamp=datetime.now(timezone.utc).isoformat(),
            services={"api": "healthy", **{name: "healthy" if ok else "unhealthy" for name, ok in checks.items()}},
            pool=PoolStatsResponse(
                active_sessions=stats.active_sessions,
                queue_length=stats.queue_length,
                ceiling=stats.ceiling,
                connected=stats.connected,
            ),
        )
        return JSONResponse(status_code=503 if overall == "unhealthy" else 200, content=body.model_dump())

    @app.get("/health/live", tags=["health"])
    async def liveness() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/health/ready", tags=["health"])
    async def readiness(request: Request) -> JSONResponse:
        service = _service(request)
        database = await service.is_database_healthy()
        storage = await service.is_storage_healthy()
        if database and storage:
            return JSONResponse(status_code=200, content={"status": "ready"})
        return JSONResponse(
            status_code=503,
            content={"status": "not ready", "database": database, "storage": storage},
        )


def build_app() -> FastAPI:
    """Factory for uvicorn ``--factory`` launches."""

    get_settings()
    return create_app()


app = create_app()
