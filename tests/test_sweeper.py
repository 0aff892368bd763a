from __future__ import annotations

import asyncio
from datetime import timedelta
from pathlib import Path

import pytest

from sitesnap.blobs import BlobStore
from sitesnap.errors import StorageError
from sitesnap.rate_limit import SlidingWindowRateLimiter
from sitesnap.store import (
    ArtifactRecord,
    ArtifactStatus,
    SiteJobRecord,
    SiteJobStatus,
    StorageConfig,
    Store,
    utcnow,
)
from sitesnap.sweeper import ExpirySweeper


class FlakyBlobStore(BlobStore):
    def __init__(self, root: Path, *, failing: set[str]) -> None:
        super().__init__(root)
        self.failing = failing

    def delete(self, key: str) -> None:
        if key in self.failing:
            raise StorageError(f"Failed to delete blob {key}: permission denied")
        super().delete(key)


def _store(tmp_path: Path) -> Store:
    return Store(StorageConfig(cache_root=tmp_path / "cache", db_path=tmp_path / "sitesnap.db"))


def _stored_artifact(store: Store, blobs: BlobStore, name: str, *, expired: bool, **extra) -> ArtifactRecord:
    key = f"2024/01/01/{name}.png"
    blobs.put(key, b"png-bytes")
    delta = timedelta(minutes=-5) if expired else timedelta(hours=1)
    return store.create_artifact(
        ArtifactRecord(
            url=f"https://example.com/{name}",
            filename=f"{name}.png",
            storage_key=key,
            size_bytes=9,
            expires_at=utcnow() + delta,
            **extra,
        )
    )


@pytest.mark.asyncio
async def test_sweep_deletes_expired_artifacts_and_their_blobs(tmp_path: Path):
    store = _store(tmp_path)
    blobs = BlobStore(tmp_path / "blobs")
    old = _stored_artifact(store, blobs, "old", expired=True)
    fresh = _stored_artifact(store, blobs, "fresh", expired=False)

    report = await ExpirySweeper(store, blobs).run_once()

    assert report.deleted == 1
    assert report.errors == 0
    assert store.get_artifact(old.id) is None
    assert not blobs.exists(old.storage_key)
    assert store.get_artifact(fresh.id) is not None
    assert blobs.exists(fresh.storage_key)


@pytest.mark.asyncio
async def test_blob_failure_marks_expired_and_sweep_continues(tmp_path: Path):
    store = _store(tmp_path)
    blobs = FlakyBlobStore(tmp_path / "blobs", failing={"2024/01/01/stuck.png"})
    stuck = _stored_artifact(store, blobs, "stuck", expired=True)
    other = _stored_artifact(store, blobs, "other", expired=True)

    report = await ExpirySweeper(store, blobs).run_once()

    assert report.errors == 1
    assert report.marked_expired == 1
    assert report.deleted == 1
    leftover = store.get_artifact(stuck.id)
    assert leftover is not None
    assert leftover.status == ArtifactStatus.EXPIRED.value
    assert store.get_artifact(other.id) is None

    # The next sweep retries the expired record once the blob store recovers.
    blobs.failing.clear()
    report = await ExpirySweeper(store, blobs).run_once()
    assert report.deleted == 1
    assert store.get_artifact(stuck.id) is None


@pytest.mark.asyncio
async def test_concurrent_sweeps_do_not_overlap(tmp_path: Path):
    store = _store(tmp_path)
    blobs = BlobStore(tmp_path / "blobs")
    _stored_artifact(store, blobs, "old", expired=True)
    sweeper = ExpirySweeper(store, blobs)

    first, second = await asyncio.gather(sweeper.run_once(), sweeper.run_once())

    assert not first.skipped
    assert second.skipped
    assert first.deleted == 1
    assert second.deleted == 0
    assert not sweeper.running


@pytest.mark.asyncio
async def test_expired_site_jobs_cascade_to_artifacts(tmp_path: Path):
    store = _store(tmp_path)
    blobs = BlobStore(tmp_path / "blobs")
    job = store.create_site_job(
        SiteJobRecord(
            root_url="https://example.com",
            total_pages=1,
            captured_count=1,
            status=SiteJobStatus.COMPLETED.value,
            expires_at=utcnow() - timedelta(minutes=1),
        )
    )
    page = _stored_artifact(store, blobs, "page", expired=False, site_job_id=job.id)

    report = await ExpirySweeper(store, blobs).run_once()

    assert report.site_jobs_deleted == 1
    assert store.get_site_job(job.id) is None
    assert store.get_artifact(page.id) is None
    assert not blobs.exists(page.storage_key)


@pytest.mark.asyncio
async def test_explicitly_expired_artifact_is_reclaimed(tmp_path: Path):
    store = _store(tmp_path)
    blobs = BlobStore(tmp_path / "blobs")
    record = _stored_artifact(store, blobs, "doomed", expired=False)
    store.update_artifact_status(record.id, ArtifactStatus.EXPIRED)

    report = await ExpirySweeper(store, blobs).run_once()

    assert report.deleted == 1
    assert store.get_artifact(record.id) is None


@pytest.mark.asyncio
async def test_sweep_prunes_idle_rate_limit_windows(tmp_path: Path):
    now = [0.0]
    limiter = SlidingWindowRateLimiter(clock=lambda: now[0], idle_window_s=60)
    await limiter.admit("acme", "10/second")
    now[0] = 120.0

    sweeper = ExpirySweeper(_store(tmp_path), BlobStore(tmp_path / "blobs"), limiter=limiter)
    report = await sweeper.run_once()

    assert report.rate_windows_pruned == 1
    assert limiter.tracked_keys() == 0


@pytest.mark.asyncio
async def test_scheduled_sweeper_runs_immediately_and_stops(tmp_path: Path):
    store = _store(tmp_path)
    blobs = BlobStore(tmp_path / "blobs")
    old = _stored_artifact(store, blobs, "old", expired=True)
    sweeper = ExpirySweeper(store, blobs, interval_ms=60_000)

    sweeper.start()
    for _ in range(50):
        if store.get_artifact(old.id) is None:
            break
        await asyncio.sleep(0.02)
    await sweeper.stop()

    assert store.get_artifact(old.id) is None
