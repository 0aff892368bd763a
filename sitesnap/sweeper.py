"""Periodic reclamation of expired artifacts and site jobs."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass
from typing import Optional

from sitesnap import metrics
from sitesnap.blobs import BlobStore
from sitesnap.rate_limit import SlidingWindowRateLimiter
from sitesnap.store import ArtifactRecord, ArtifactStatus, Store

LOGGER = logging.getLogger(__name__)


@dataclass
class SweepReport:
    """Counts from one sweep; ``skipped`` means another sweep was already running."""

    skipped: bool = False
    deleted: int = 0
    marked_expired: int = 0
    errors: int = 0
    site_jobs_deleted: int = 0
    blobs_purged: int = 0
    rate_windows_pruned: int = 0
    duration_ms: int = 0


class ExpirySweeper:
    """Deletes artifacts past ``expires_at``; never runs two sweeps at once."""

    def __init__(
        self,
        store: Store,
        blobs: BlobStore,
        *,
        limiter: SlidingWindowRateLimiter | None = None,
        interval_ms: int = 3_600_000,
        batch_size: int = 100,
        blob_backstop_hours: int = 24,
    ) -> None:
        self._store = store
        self._blobs = blobs
        self._limiter = limiter
        self._interval_s = max(1, interval_ms) / 1000.0
        self._batch_size = batch_size
        self._backstop_s = blob_backstop_hours * 3600
        self._running = False
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Run one sweep now, then every interval."""

        if self._task is not None and not self._task.done():
            LOGGER.warning("Expiry sweeper already started")
            return
        LOGGER.info("Starting expiry sweeper (interval=%.0fs)", self._interval_s)
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        LOGGER.info("Expiry sweeper stopped")

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_once()
            except Exception:  # pragma: no cover - keep the schedule alive
                LOGGER.exception("Scheduled sweep failed")
            await asyncio.sleep(self._interval_s)

    async def run_once(self) -> SweepReport:
        if self._running:
            LOGGER.debug("Sweep already running, skipping")
            return SweepReport(skipped=True)

        self._running = True
        report = SweepReport()
        start = time.perf_counter()
        try:
            LOGGER.info("Starting sweep")
            expired = await asyncio.to_thread(self._store.expired_artifacts, self._batch_size)
            LOGGER.info("Found %d expired artifacts", len(expired))
            retry_later: set[str] = set()
            for record in expired:
                if not await self._reclaim(record, report):
                    retry_later.add(record.id)

            stale = await asyncio.to_thread(
                self._store.expired_artifacts, self._batch_size, status=ArtifactStatus.EXPIRED
            )
            for record in stale:
                if record.id not in retry_later:
                    await self._retry_expired(record, report)

            await self._reclaim_site_jobs(report)

            report.blobs_purged = await asyncio.to_thread(self._blobs.purge_older_than, self._backstop_s)
            if self._limiter is not None:
                report.rate_windows_pruned = self._limiter.prune()
        except Exception:
            LOGGER.exception("Sweep failed")
            report.errors += 1
        finally:
            self._running = False

        report.duration_ms = int((time.perf_counter() - start) * 1000)
        metrics.record_sweep(
            artifacts=report.deleted,
            site_jobs=report.site_jobs_deleted,
            errors=report.errors,
        )
        LOGGER.info(
            "Sweep completed",
            extra={
                "deleted": report.deleted,
                "marked_expired": report.marked_expired,
                "errors": report.errors,
                "site_jobs_deleted": report.site_jobs_deleted,
                "blobs_purged": report.blobs_purged,
                "duration_ms": report.duration_ms,
            },
        )
        return report

    async def _reclaim(self, record: ArtifactRecord, report: SweepReport) -> bool:
        try:
            await asyncio.to_thread(self._blobs.delete, record.storage_key)
        except Exception as exc:
            report.errors += 1
            LOGGER.error("Failed to delete blob for artifact %s: %s", record.id, exc)
            try:
                await asyncio.to_thread(self._store.update_artifact_status, record.id, ArtifactStatus.EXPIRED)
                report.marked_expired += 1
            except Exception as db_exc:
                LOGGER.error("Failed to mark artifact %s expired: %s", record.id, db_exc)
            return False

        try:
            await asyncio.to_thread(self._store.delete_artifact, record.id)
        except Exception as exc:
            report.errors += 1
            LOGGER.error("Failed to delete artifact record %s: %s", record.id, exc)
            return False
        report.deleted += 1
        LOGGER.debug("Artifact cleaned up", extra={"artifact_id": record.id, "url": record.url})
        return True

    async def _retry_expired(self, record: ArtifactRecord, report: SweepReport) -> None:
        try:
            await asyncio.to_thread(self._blobs.delete, record.storage_key)
            await asyncio.to_thread(self._store.delete_artifact, record.id)
        except Exception as exc:
            report.errors += 1
            LOGGER.warning("Retry of expired artifact %s failed: %s", record.id, exc)
            return
        report.deleted += 1

    async def _reclaim_site_jobs(self, report: SweepReport) -> None:
        jobs = await asyncio.to_thread(self._store.expired_site_jobs)
        for job in jobs:
            try:
                keys = await asyncio.to_thread(self._store.delete_site_job, job.id)
            except Exception as exc:
                report.errors += 1
                LOGGER.error("Failed to clean up site job %s: %s", job.id, exc)
                continue
            report.site_jobs_deleted += 1
            for key in keys:
                try:
                    await asyncio.to_thread(self._blobs.delete, key)
                except Exception as exc:
                    LOGGER.warning("Failed to delete blob %s for site job %s: %s", key, job.id, exc)
            LOGGER.debug("Site job cleaned up", extra={"site_job_id": job.id, "artifacts": len(keys)})


__all__ = ["ExpirySweeper", "SweepReport"]
