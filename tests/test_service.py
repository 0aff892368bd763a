from __future__ import annotations

from pathlib import Path

import pytest

from sitesnap.blobs import BlobStore
from sitesnap.capture import CapturePolicy, CaptureRequest
from sitesnap.errors import PoolShuttingDownError, ValidationError
from sitesnap.service import ScreenshotService
from sitesnap.sitemap import SitemapResolver
from sitesnap.store import StorageConfig, build_store
from tests.fakes import FakeEngine, make_settings, mock_client

QUICK = CapturePolicy(timeout_ms=1000, scroll_step_px=400, scroll_delay_ms=0, settle_ms=0)


def _service(tmp_path: Path) -> ScreenshotService:
    settings = make_settings(tmp_path)
    config = StorageConfig(cache_root=settings.storage.cache_root, db_path=settings.storage.db_path)
    return ScreenshotService(
        settings,
        store=build_store(config),
        blobs=BlobStore(config.blob_root),
        engine=FakeEngine(),
        resolver=SitemapResolver(mock_client({})),
        capture_policy=QUICK,
    )


@pytest.mark.asyncio
async def test_startup_and_shutdown_order(tmp_path: Path):
    service = _service(tmp_path)
    await service.startup(start_sweeper=False)
    assert service.is_render_engine_healthy()
    assert await service.is_database_healthy()
    assert await service.is_storage_healthy()

    saved, failed = await service.submit_captures([CaptureRequest(url="https://example.com/")])
    assert len(saved) == 1 and failed == []
    found = await service.read_artifact_bytes(saved[0].id)
    assert found is not None

    await service.shutdown()
    assert service.engine.closed
    assert not service.is_render_engine_healthy()
    with pytest.raises(PoolShuttingDownError):
        await service.submit_capture(CaptureRequest(url="https://example.com/"))


@pytest.mark.asyncio
async def test_empty_batch_is_a_validation_error(tmp_path: Path):
    service = _service(tmp_path)
    await service.startup(start_sweeper=False)
    try:
        with pytest.raises(ValidationError):
            await service.submit_captures([])
    finally:
        await service.shutdown()


@pytest.mark.asyncio
async def test_read_artifact_bytes_tolerates_missing_blob(tmp_path: Path):
    service = _service(tmp_path)
    await service.startup(start_sweeper=False)
    try:
        record = await service.submit_capture(CaptureRequest(url="https://example.com/gone"))
        service.blobs.delete(record.storage_key)
        assert await service.read_artifact_bytes(record.id) is None
        assert await service.delete_artifact(record.id, immediate=True)
        assert await service.get_artifact(record.id) is None
    finally:
        await service.shutdown()
