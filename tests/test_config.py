import importlib

import pytest

from cineai_rec import config


@pytest.fixture(autouse=True)
def _restore_config(monkeypatch):
    yield
    monkeypatch.undo()
    importlib.reload(config)


def test_env_overrides_and_validation(monkeypatch):
    monkeypatch.setenv("CINEAI_MEMORY_CACHE_TTL", "30")
    monkeypatch.setenv("CINEAI_DECAY_RATE", "1.5")  # should clamp to max
    monkeypatch.setenv("CINEAI_BLEND_RATIO", "-0.2")  # should clamp to min
    monkeypatch.setenv("CINEAI_MEMORY_CACHE_MAX_ENTRIES", "0")  # min clamp

    cfg = importlib.reload(config)

    assert cfg.MEMORY_CACHE_TTL_SECONDS == 30.0
    assert cfg.DECAY_RATE_PER_DAY == 1.0
    assert cfg.DEFAULT_PRIMARY_RATIO == 0.0
    assert cfg.MEMORY_CACHE_MAX_ENTRIES == 1


def test_db_path_respects_env(monkeypatch, tmp_path):
    db_path = tmp_path / "custom.db"
    monkeypatch.setenv("CINEAI_DB", str(db_path))

    cfg = importlib.reload(config)

    assert cfg.DB_PATH == db_path


def test_invalid_env_values_fall_back_to_defaults(monkeypatch):
    monkeypatch.setenv("CINEAI_FETCH_TIMEOUT", "not-a-float")
    monkeypatch.setenv("CINEAI_RECENCY_WINDOW_DAYS", "bad-int")
    monkeypatch.setenv("CINEAI_BLEND_RATIO", "oops")

    cfg = importlib.reload(config)

    assert cfg.FETCH_TIMEOUT == 8.0
    assert cfg.RECENCY_WINDOW_DAYS == 30
    assert cfg.DEFAULT_PRIMARY_RATIO == 0.7


def test_defaults(monkeypatch):
    for key in ("CINEAI_MEMORY_CACHE_TTL", "CINEAI_DECAY_RATE", "CINEAI_BLEND_RATIO", "CINEAI_RECENCY_WINDOW_DAYS"):
        monkeypatch.delenv(key, raising=False)

    cfg = importlib.reload(config)

    assert cfg.MEMORY_CACHE_TTL_SECONDS == 120.0
    assert cfg.DECAY_RATE_PER_DAY == 0.95
    assert cfg.DEFAULT_PRIMARY_RATIO == 0.7
    assert cfg.RECENCY_WINDOW_DAYS == 30
    assert cfg.NOVELTY_PENALTY == 0.8
