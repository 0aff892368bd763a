from __future__ import annotations

import json
import os
import time
from pathlib import Path

import pytest

from sitesnap.blobs import BlobStore
from sitesnap.errors import StorageError


def test_put_get_delete(tmp_path: Path):
    blobs = BlobStore(tmp_path / "blobs")
    ref = blobs.put("2024/05/01/abc-shot.png", b"\x89PNG data", {"original-url": "https://example.com"})

    assert ref.bucket == "screenshots"
    assert ref.size == 10
    assert blobs.exists(ref.key)
    assert blobs.get(ref.key) == b"\x89PNG data"
    meta = json.loads((tmp_path / "blobs" / "2024/05/01/abc-shot.png.meta.json").read_text())
    assert meta == {"original-url": "https://example.com"}

    blobs.delete(ref.key)
    blobs.delete(ref.key)
    assert not blobs.exists(ref.key)
    with pytest.raises(FileNotFoundError):
        blobs.get(ref.key)


def test_keys_cannot_escape_root(tmp_path: Path):
    blobs = BlobStore(tmp_path / "blobs")
    with pytest.raises(StorageError):
        blobs.put("../outside.png", b"x")


def test_purge_older_than_removes_stale_files(tmp_path: Path):
    blobs = BlobStore(tmp_path / "blobs")
    blobs.put("old/one.png", b"1", {"viewport": "desktop"})
    blobs.put("new/two.png", b"2")
    stale = time.time() - 7200
    for path in (tmp_path / "blobs" / "old").iterdir():
        os.utime(path, (stale, stale))

    assert blobs.purge_older_than(3600) == 1
    assert not blobs.exists("old/one.png")
    assert not (tmp_path / "blobs" / "old" / "one.png.meta.json").exists()
    assert blobs.exists("new/two.png")
    assert blobs.ping()
