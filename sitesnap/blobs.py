"""Filesystem blob store for screenshot bytes."""

from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from sitesnap.errors import StorageError

LOGGER = logging.getLogger(__name__)

_META_SUFFIX = ".meta.json"


@dataclass(frozen=True, slots=True)
class BlobRef:
    """Where a blob landed and how large it is."""

    bucket: str
    key: str
    size: int


class BlobStore:
    """Stores blobs as plain files under ``<root>/<key>``.

    Keys are relative paths (``YYYY/MM/DD/<uuid>-<filename>``); anything that
    would resolve outside the root is rejected.
    """

    def __init__(self, root: Path, *, bucket: str = "screenshots") -> None:
        self.root = Path(root)
        self.bucket = bucket
        self.root.mkdir(parents=True, exist_ok=True)

    def put(self, key: str, data: bytes, metadata: Mapping[str, str] | None = None) -> BlobRef:
        path = self._resolve(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_name(path.name + ".tmp")
            tmp_path.write_bytes(data)
            os.replace(tmp_path, path)
            if metadata:
                meta_path = path.with_name(path.name + _META_SUFFIX)
                meta_path.write_text(json.dumps(dict(metadata), sort_keys=True), encoding="utf-8")
        except OSError as exc:
            raise StorageError(f"Failed to store blob {key}: {exc}") from exc
        LOGGER.info("Blob stored", extra={"bucket": self.bucket, "key": key, "size": len(data)})
        return BlobRef(bucket=self.bucket, key=key, size=len(data))

    def get(self, key: str) -> bytes:
        path = self._resolve(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            raise
        except OSError as exc:
            raise StorageError(f"Failed to read blob {key}: {exc}") from exc

    def delete(self, key: str) -> None:
        """Remove a blob; deleting a missing key is not an error."""

        path = self._resolve(key)
        try:
            path.unlink(missing_ok=True)
            path.with_name(path.name + _META_SUFFIX).unlink(missing_ok=True)
        except OSError as exc:
            raise StorageError(f"Failed to delete blob {key}: {exc}") from exc
        LOGGER.info("Blob deleted", extra={"bucket": self.bucket, "key": key})

    def exists(self, key: str) -> bool:
        return self._resolve(key).is_file()

    def ping(self) -> bool:
        return self.root.is_dir() and os.access(self.root, os.W_OK)

    def purge_older_than(self, max_age_s: float) -> int:
        """Lifecycle backstop: drop any blob older than ``max_age_s`` seconds."""

        cutoff = time.time() - max_age_s
        removed = 0
        for path in self.root.rglob("*"):
            if not path.is_file():
                continue
            try:
                if path.stat().st_mtime >= cutoff:
                    continue
                path.unlink()
            except FileNotFoundError:
                continue
            except OSError as exc:
                LOGGER.warning("Failed to purge blob %s: %s", path, exc)
                continue
            if not path.name.endswith(_META_SUFFIX):
                removed += 1
        if removed:
            LOGGER.info("Purged %d stale blobs", removed)
        return removed

    def _resolve(self, key: str) -> Path:
        root = self.root.resolve()
        target = (root / key).resolve()
        try:
            target.relative_to(root)
        except ValueError:
            raise StorageError(f"Blob key escapes store root: {key}")
        return target


__all__ = ["BlobRef", "BlobStore"]
