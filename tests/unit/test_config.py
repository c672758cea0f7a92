from __future__ import annotations

import pytest

import discovery.config as config


@pytest.fixture(autouse=True)
def _clear_settings_cache():
    config.get_index_settings.cache_clear()
    yield
    config.get_index_settings.cache_clear()


def test_env_helpers_fall_back_on_bad_values(monkeypatch):
    monkeypatch.setenv("SOME_FLOAT", "not-a-number")
    monkeypatch.setenv("SOME_INT", "4.5")
    monkeypatch.setenv("SOME_BOOL", "off")
    assert config._float_from_env("SOME_FLOAT", 0.25) == 0.25
    assert config._int_from_env("SOME_INT", 3) == 3
    assert config._bool_from_env("SOME_BOOL", True) is False
    assert config._bool_from_env("UNSET_BOOL_FLAG", True) is True


def test_index_settings_defaults(monkeypatch):
    for name in ("INDEX_BACKEND", "INDEX_METRIC", "HNSW_M", "INDEX_REBUILD_THRESHOLD"):
        monkeypatch.delenv(name, raising=False)
    settings = config.get_index_settings()
    assert settings.backend == "auto"
    assert settings.metric == "cosine"
    assert settings.m == 16
    assert settings.rebuild_threshold == pytest.approx(0.1)


def test_index_settings_reject_unknown_values(monkeypatch, caplog):
    monkeypatch.setenv("INDEX_BACKEND", "annoy")
    monkeypatch.setenv("INDEX_METRIC", "hamming")
    monkeypatch.setenv("INDEX_REBUILD_THRESHOLD", "-1")
    monkeypatch.setenv("HNSW_EF_SEARCH", "64")

    settings = config.get_index_settings()

    assert settings.backend == "auto"
    assert settings.metric == "cosine"
    assert settings.rebuild_threshold == pytest.approx(0.1)
    assert settings.ef_search == 64
    assert "Unsupported INDEX_BACKEND" in caplog.text
