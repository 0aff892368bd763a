from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from sitesnap.store import (
    ArtifactFilters,
    ArtifactRecord,
    ArtifactStatus,
    SiteJobFilters,
    SiteJobRecord,
    SiteJobStatus,
    StorageConfig,
    Store,
    build_filename,
    build_storage_key,
    utcnow,
)


def _store(tmp_path: Path) -> Store:
    return Store(StorageConfig(cache_root=tmp_path / "cache", db_path=tmp_path / "sitesnap.db"))


def _artifact(url: str, **overrides) -> ArtifactRecord:
    now = utcnow()
    values = {
        "url": url,
        "filename": "example-com-home-1.png",
        "storage_key": f"2024/01/01/{url.rsplit('/', 1)[-1] or 'home'}.png",
        "size_bytes": 10,
        "expires_at": now + timedelta(hours=1),
    }
    values.update(overrides)
    return ArtifactRecord(**values)


def _job(total: int = 2, **overrides) -> SiteJobRecord:
    values = {
        "root_url": "https://example.com",
        "sitemap_url": "https://example.com/sitemap.xml",
        "total_pages": total,
        "status": SiteJobStatus.PROCESSING.value,
        "expires_at": utcnow() + timedelta(hours=1),
    }
    values.update(overrides)
    return SiteJobRecord(**values)


def test_build_filename_uses_host_and_path():
    moment = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
    millis = int(moment.timestamp() * 1000)
    assert build_filename("https://www.example.com/blog/post-1/", captured_at=moment) == (
        f"www-example-com-blog-post-1-{millis}.png"
    )
    assert build_filename("https://example.com", captured_at=moment) == f"example-com-home-{millis}.png"


def test_build_storage_key_is_date_prefixed():
    key = build_storage_key("shot.png", now=datetime(2024, 3, 1, 12, 0))
    assert key.startswith("2024/03/01/")
    assert key.endswith("-shot.png")


def test_list_artifacts_filters_and_hides_expired(tmp_path: Path):
    store = _store(tmp_path)
    store.create_artifact(_artifact("https://example.com/a", client_name="acme", project_name="launch"))
    store.create_artifact(_artifact("https://example.com/b", client_name="acme"))
    store.create_artifact(_artifact("https://example.com/c", client_name="other"))
    stale = store.create_artifact(
        _artifact("https://example.com/d", client_name="acme", expires_at=utcnow() - timedelta(minutes=1))
    )
    marked = store.create_artifact(_artifact("https://example.com/e", client_name="acme"))
    assert store.update_artifact_status(marked.id, ArtifactStatus.EXPIRED)

    records, total = store.list_artifacts(ArtifactFilters(client_name="acme"))
    assert total == 2
    assert {record.url for record in records} == {"https://example.com/a", "https://example.com/b"}

    records, total = store.list_artifacts(ArtifactFilters(client_name="acme", project_name="launch"))
    assert [record.url for record in records] == ["https://example.com/a"]

    _, total = store.list_artifacts(ArtifactFilters(client_name="acme", include_expired=True))
    assert total == 4

    page, total = store.list_artifacts(ArtifactFilters(include_expired=True, limit=2, offset=0))
    assert total == 5 and len(page) == 2
    assert stale.id in {record.id for record in store.expired_artifacts()}


def test_mark_downloaded_and_delete(tmp_path: Path):
    store = _store(tmp_path)
    record = store.create_artifact(_artifact("https://example.com/a", tags=["hero", "v2"]))

    store.mark_downloaded(record.id)
    loaded = store.get_artifact(record.id)
    assert loaded is not None
    assert loaded.downloaded_at is not None
    assert loaded.tags == ["hero", "v2"]

    assert store.delete_artifact(record.id)
    assert not store.delete_artifact(record.id)
    assert store.get_artifact(record.id) is None


def test_increment_site_job_never_passes_total(tmp_path: Path):
    store = _store(tmp_path)
    job = store.create_site_job(_job(total=2))

    assert store.increment_site_job(job.id, captured=True)
    assert store.increment_site_job(job.id, captured=False)
    assert not store.increment_site_job(job.id, captured=True)

    loaded = store.get_site_job(job.id)
    assert loaded is not None
    assert (loaded.captured_count, loaded.failed_count) == (1, 1)


def test_site_job_status_only_moves_forward(tmp_path: Path):
    store = _store(tmp_path)
    job = store.create_site_job(_job(status=SiteJobStatus.PENDING.value))

    assert store.update_site_job_status(job.id, SiteJobStatus.PROCESSING)
    assert not store.update_site_job_status(job.id, SiteJobStatus.PENDING)
    assert store.complete_site_job(job.id, SiteJobStatus.COMPLETED)
    assert not store.complete_site_job(job.id, SiteJobStatus.FAILED)
    assert not store.update_site_job_status(job.id, SiteJobStatus.PROCESSING)

    loaded = store.get_site_job(job.id)
    assert loaded is not None
    assert loaded.status == SiteJobStatus.COMPLETED.value
    assert loaded.completed_at is not None

    with pytest.raises(ValueError):
        store.complete_site_job(job.id, SiteJobStatus.PROCESSING)
    with pytest.raises(KeyError):
        store.update_site_job_status("missing", SiteJobStatus.PROCESSING)


def test_list_site_jobs_filters_by_status(tmp_path: Path):
    store = _store(tmp_path)
    done = store.create_site_job(_job(client_name="acme"))
    store.complete_site_job(done.id, SiteJobStatus.COMPLETED)
    store.create_site_job(_job(client_name="acme"))

    jobs, total = store.list_site_jobs(SiteJobFilters(status="completed"))
    assert total == 1
    assert jobs[0].id == done.id

    _, total = store.list_site_jobs(SiteJobFilters(client_name="acme"))
    assert total == 2


def test_delete_site_job_cascades_to_artifacts(tmp_path: Path):
    store = _store(tmp_path)
    job = store.create_site_job(_job(expires_at=utcnow() - timedelta(minutes=5)))
    store.create_site_job(_job(status=SiteJobStatus.PENDING.value, expires_at=utcnow() - timedelta(minutes=5)))
    first = store.create_artifact(_artifact("https://example.com/a", site_job_id=job.id))
    second = store.create_artifact(_artifact("https://example.com/b", site_job_id=job.id))
    loose = store.create_artifact(_artifact("https://example.com/c"))

    assert [record.url for record in store.artifacts_for_site_job(job.id)] == [
        "https://example.com/a",
        "https://example.com/b",
    ]
    # Pending jobs are never reclaimed.
    assert [record.id for record in store.expired_site_jobs()] == [job.id]

    keys = store.delete_site_job(job.id)

    assert sorted(keys) == sorted([first.storage_key, second.storage_key])
    assert store.get_site_job(job.id) is None
    assert store.artifacts_for_site_job(job.id) == []
    assert store.get_artifact(loose.id) is not None


def test_ping_reports_database_health(tmp_path: Path):
    store = _store(tmp_path)
    assert store.ping()
    store.close()
