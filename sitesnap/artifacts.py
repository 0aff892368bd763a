"""Turn captured bytes into a stored blob plus its metadata record."""

from __future__ import annotations

import asyncio
import logging

from sitesnap.blobs import BlobStore
from sitesnap.capture import CaptureRequest
from sitesnap.errors import StorageError
from sitesnap.store import (
    ArtifactRecord,
    ArtifactStatus,
    Store,
    build_filename,
    build_storage_key,
    ttl_deadline,
    utcnow,
)

LOGGER = logging.getLogger(__name__)


class ArtifactWriter:
    """Writes the blob first, then the record; a failed record write removes the blob."""

    def __init__(self, store: Store, blobs: BlobStore, *, ttl_hours: int = 24) -> None:
        self.store = store
        self.blobs = blobs
        self.ttl_hours = ttl_hours

    async def save(self, request: CaptureRequest, image: bytes) -> ArtifactRecord:
        return await asyncio.to_thread(self._save_sync, request, image)

    def _save_sync(self, request: CaptureRequest, image: bytes) -> ArtifactRecord:
        now = utcnow()
        filename = build_filename(request.url, captured_at=now)
        key = build_storage_key(filename, now=now)
        metadata = {"original-url": request.url, "viewport": request.viewport}
        if request.site_job_id:
            metadata["site-job-id"] = request.site_job_id
        ref = self.blobs.put(key, image, metadata)

        record = ArtifactRecord(
            url=request.url,
            filename=filename,
            bucket=ref.bucket,
            storage_key=ref.key,
            size_bytes=ref.size,
            viewport=request.viewport,
            full_page=request.full_page,
            client_name=request.client_name,
            project_name=request.project_name,
            tags=list(request.tags),
            site_job_id=request.site_job_id,
            created_at=now,
            expires_at=ttl_deadline(self.ttl_hours, now=now),
            status=ArtifactStatus.COMPLETED.value,
        )
        try:
            return self.store.create_artifact(record)
        except Exception as exc:
            LOGGER.error("Failed to save artifact record for %s: %s", request.url, exc)
            try:
                self.blobs.delete(key)
            except StorageError as cleanup_exc:
                LOGGER.warning("Orphaned blob %s: %s", key, cleanup_exc)
            raise StorageError(f"Failed to save artifact metadata: {exc}") from exc


__all__ = ["ArtifactWriter"]
