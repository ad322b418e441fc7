import importlib
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

# Ensure the package under test is importable without installation
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))


NOW = datetime(2025, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def fresh_config(monkeypatch, tmp_path):
    """
    Reload config with a temporary database path to keep tests isolated.
    """
    db_path = tmp_path / "test.db"
    monkeypatch.setenv("CINEAI_DB", str(db_path))
    import cineai_rec.config as config

    importlib.reload(config)
    return config


@pytest.fixture
def fresh_db(monkeypatch, tmp_path):
    """
    Reload config/database modules with a temp DB and cleanly close the pool after use.
    """
    db_path = tmp_path / "test.db"
    monkeypatch.setenv("CINEAI_DB", str(db_path))

    import cineai_rec.config as config
    import cineai_rec.database as database

    database.close_pool()
    importlib.reload(config)
    importlib.reload(database)
    database.init_db()

    yield database
    database.close_pool()


class StubStore:
    """In-memory stand-in for database.SignalStore."""

    def __init__(self, signals=None, attributes=None, local=None):
        self.signals = signals or {}
        self.attributes = attributes or {}
        self.local = local or []
        self.calls = []

    def load_user_signals(self, user_id):
        self.calls.append(("load_user_signals", user_id))
        return self.signals.get(user_id, {})

    def load_movie_attributes(self, movie_ids):
        ids = set(movie_ids)
        self.calls.append(("load_movie_attributes", ids))
        return {k: v for k, v in self.attributes.items() if k in ids}

    def load_local_candidates(self, limit, min_rating=None):
        self.calls.append(("load_local_candidates", limit))
        return self.local[:limit]


class FailingStore:
    """Every read raises, like an unreachable database."""

    def load_user_signals(self, user_id):
        raise TimeoutError("database timed out")

    def load_movie_attributes(self, movie_ids):
        raise TimeoutError("database timed out")

    def load_local_candidates(self, limit, min_rating=None):
        raise TimeoutError("database timed out")


@pytest.fixture
def stub_store_cls():
    return StubStore


@pytest.fixture
def failing_store():
    return FailingStore()
