from __future__ import annotations

import json
from pathlib import Path

import pytest

from sitesnap import settings as settings_module
from sitesnap.auth import ApiKeyTable
from sitesnap.settings import ApiKey, get_settings, load_api_keys, load_config


@pytest.fixture
def fresh_settings():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_crawl_concurrency_leaves_headroom(monkeypatch, fresh_settings, tmp_path: Path):
    monkeypatch.setenv("MAX_CONCURRENT_PAGES", "3")
    monkeypatch.setenv("SITE_CRAWL_CONCURRENCY", "5")
    monkeypatch.setenv("CONFIG_DIR", str(tmp_path))

    cfg = get_settings(str(tmp_path / "missing.env"))

    assert cfg.browser.max_concurrent_pages == 3
    assert cfg.crawl.concurrency == 2
    assert cfg.rate_limit.api_keys == ()


def test_single_page_ceiling_still_allows_one_crawl_worker(monkeypatch, fresh_settings, tmp_path: Path):
    monkeypatch.setenv("MAX_CONCURRENT_PAGES", "1")
    monkeypatch.setenv("CONFIG_DIR", str(tmp_path))

    assert get_settings(str(tmp_path / "missing.env")).crawl.concurrency == 1


def test_invalid_page_ceiling_is_rejected(monkeypatch, fresh_settings, tmp_path: Path):
    monkeypatch.setenv("MAX_CONCURRENT_PAGES", "0")
    with pytest.raises(ValueError):
        get_settings(str(tmp_path / "missing.env"))


def test_api_keys_from_env_and_file(monkeypatch, tmp_path: Path):
    monkeypatch.setenv(
        "API_KEYS",
        json.dumps([{"key": "k1", "name": "acme", "rateLimit": "5/minute"}, {"key": "k2", "name": "bare"}]),
    )
    keys = load_api_keys(load_config(str(tmp_path / "missing.env")), tmp_path, default_limit="20/second")
    assert keys == (
        ApiKey(key="k1", name="acme", rate_limit="5/minute"),
        ApiKey(key="k2", name="bare", rate_limit="20/second"),
    )

    monkeypatch.delenv("API_KEYS")
    (tmp_path / "api-keys.json").write_text(
        json.dumps({"keys": [{"key": "k3", "name": "file", "enabled": False}]}), encoding="utf-8"
    )
    keys = load_api_keys(load_config(str(tmp_path / "missing.env")), tmp_path)
    assert keys == (ApiKey(key="k3", name="file", enabled=False),)

    table = ApiKeyTable(keys)
    assert table.configured
    assert table.verify("k3") is None


def test_malformed_api_keys_raise(monkeypatch, tmp_path: Path):
    monkeypatch.setenv("API_KEYS", "{not json")
    with pytest.raises(ValueError):
        load_api_keys(load_config(str(tmp_path / "missing.env")), tmp_path)
    monkeypatch.setenv("API_KEYS", json.dumps([{"name": "no-key"}]))
    with pytest.raises(ValueError):
        load_api_keys(load_config(str(tmp_path / "missing.env")), tmp_path)


def test_module_singleton_is_loaded():
    assert settings_module.settings.retention.sweep_batch_size >= 1
