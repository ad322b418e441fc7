import sqlite3
import json
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterable

from .config import DB_PATH, FETCH_TIMEOUT, SQLITE_PARAM_CHUNK
from .decay import parse_timestamp
from .models import Candidate, MovieAttributes

logger = logging.getLogger(__name__)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class ConnectionPool:
    """
    One SQLite connection per thread, opened lazily.

    Every connection waits at most `timeout` seconds on a locked database and
    then raises sqlite3.OperationalError, which readers treat as a fetch error.
    The pool also tracks per-thread transaction nesting for get_db().
    """

    def __init__(self, db_path, timeout: float = FETCH_TIMEOUT):
        self._db_path = db_path
        self._timeout = timeout
        self._local = threading.local()
        self._lock = threading.Lock()
        self._all: list[sqlite3.Connection] = []

    def get_connection(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(self._db_path, timeout=self._timeout, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute(f"PRAGMA busy_timeout = {int(self._timeout * 1000)}")
            conn.execute("PRAGMA journal_mode = WAL")
            self._local.conn = conn
            self._local.depth = 0
            with self._lock:
                self._all.append(conn)
        return conn

    @property
    def depth(self) -> int:
        return getattr(self._local, "depth", 0)

    @depth.setter
    def depth(self, value: int):
        self._local.depth = max(0, value)

    def close_all(self):
        with self._lock:
            for conn in self._all:
                try:
                    conn.close()
                except sqlite3.Error as e:
                    logger.warning(f"Error closing connection: {e}")
            self._all.clear()
        self._local = threading.local()


_pool: ConnectionPool | None = None
_pool_lock = threading.Lock()


def _get_pool() -> ConnectionPool:
    global _pool
    with _pool_lock:
        if _pool is None:
            DB_PATH.parent.mkdir(exist_ok=True, parents=True)
            _pool = ConnectionPool(DB_PATH)
        return _pool


@contextmanager
def get_db(read_only: bool = False):
    """
    Yield this thread's connection inside a transaction.

    Nested uses share the outer transaction: only the outermost block commits
    (skipped when read_only) or rolls back on error.
    """
    pool = _get_pool()
    conn = pool.get_connection()
    outermost = pool.depth == 0
    pool.depth += 1
    try:
        yield conn
        if outermost and not read_only:
            conn.commit()
    except Exception:
        if outermost:
            conn.rollback()
        raise
    finally:
        pool.depth -= 1


def close_pool():
    """Close every pooled connection. Registered with atexit by the CLI."""
    global _pool
    with _pool_lock:
        if _pool is not None:
            _pool.close_all()
            _pool = None



def init_db() -> None:
    DB_PATH.parent.mkdir(exist_ok=True, parents=True)
    with get_db() as conn:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS user_profiles (
                id TEXT PRIMARY KEY,
                preferences TEXT,       -- JSON object
                updated_at TEXT
            );

            CREATE TABLE IF NOT EXISTS movies (
                id TEXT PRIMARY KEY,
                tmdb_id INTEGER UNIQUE,
                title TEXT,
                year INTEGER,
                genres TEXT,            -- JSON list
                directors TEXT,         -- JSON list
                cast_members TEXT,      -- JSON list, billing order
                rating REAL,
                plot TEXT,
                embedding TEXT,         -- JSON list of floats
                updated_at TEXT
            );

            CREATE TABLE IF NOT EXISTS ratings (
                user_id TEXT,
                movie_id TEXT,
                rating REAL,
                interested INTEGER DEFAULT 0,
                rated_at TEXT,
                PRIMARY KEY (user_id, movie_id)
            );

            CREATE TABLE IF NOT EXISTS watchlist (
                user_id TEXT,
                movie_id TEXT,
                added_at TEXT,
                watched INTEGER DEFAULT 0,
                PRIMARY KEY (user_id, movie_id)
            );

            CREATE TABLE IF NOT EXISTS user_interactions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                interaction_type TEXT NOT NULL,
                movie_id TEXT,
                metadata TEXT,          -- JSON object
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS trending_cache (
                time_window TEXT NOT NULL,
                tmdb_id INTEGER NOT NULL,
                position INTEGER NOT NULL,
                payload TEXT NOT NULL,  -- JSON candidate
                cached_at TEXT NOT NULL,
                PRIMARY KEY (time_window, tmdb_id)
            );

            CREATE INDEX IF NOT EXISTS idx_ratings_user ON ratings(user_id);
            CREATE INDEX IF NOT EXISTS idx_watchlist_user ON watchlist(user_id);
            CREATE INDEX IF NOT EXISTS idx_interactions_user_time ON user_interactions(user_id, created_at);
            CREATE INDEX IF NOT EXISTS idx_movies_rating ON movies(rating);
        """)


def load_json(val, default=None):
    """Safely load JSON from db field."""
    if default is None:
        default = []
    if not val:
        return default
    if isinstance(val, (list, dict)):
        return val
    try:
        return json.loads(val)
    except (json.JSONDecodeError, TypeError) as e:
        logger.warning(f"Failed to parse JSON '{str(val)[:50]}...': {e}")
        return default


def _chunks(items: list, size: int | None = None):
    size = size or SQLITE_PARAM_CHUNK
    for i in range(0, len(items), size):
        yield items[i:i + size]


def _load_labels(row: sqlite3.Row, column: str) -> list[str]:
    """Decode a JSON list column, keeping only string entries."""
    values = load_json(row[column])
    if not isinstance(values, list):
        logger.warning(f"Ignoring {column} of movie {row['id']}: expected a list, got {type(values).__name__}")
        return []
    return [v for v in values if isinstance(v, str)]


def _row_to_attributes(row: sqlite3.Row) -> MovieAttributes:
    embedding = load_json(row['embedding'], default=None)
    return MovieAttributes(
        movie_id=row['id'],
        tmdb_id=row['tmdb_id'],
        title=row['title'] or "",
        genres=_load_labels(row, 'genres'),
        directors=_load_labels(row, 'directors'),
        cast=_load_labels(row, 'cast_members'),
        rating=row['rating'],
        year=row['year'],
        embedding=embedding if isinstance(embedding, list) else None,
    )


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

def load_user_signals(user_id: str, interaction_limit: int = 500) -> dict:
    """
    Load a user's preference record, watchlist, ratings and interactions.

    One connection, four statements; missing users come back as empty
    collections rather than an error.
    """
    with get_db(read_only=True) as conn:
        profile = conn.execute(
            "SELECT preferences FROM user_profiles WHERE id = ?", (user_id,)
        ).fetchone()
        watchlist = conn.execute("""
            SELECT movie_id, added_at, watched
            FROM watchlist WHERE user_id = ?
            ORDER BY added_at DESC
        """, (user_id,)).fetchall()
        ratings = conn.execute("""
            SELECT movie_id, rating, interested, rated_at
            FROM ratings WHERE user_id = ?
            ORDER BY rated_at DESC
        """, (user_id,)).fetchall()
        interactions = conn.execute("""
            SELECT interaction_type, movie_id, metadata, created_at
            FROM user_interactions WHERE user_id = ?
            ORDER BY created_at DESC
            LIMIT ?
        """, (user_id, interaction_limit)).fetchall()

    preferences = load_json(profile['preferences'], default={}) if profile else {}
    if not isinstance(preferences, dict):
        logger.warning(f"Preferences for user {user_id} are not an object, ignoring")
        preferences = {}

    return {
        'preferences': preferences,
        'watchlist': [dict(r) for r in watchlist],
        'ratings': [dict(r) for r in ratings],
        'interactions': [dict(r) for r in interactions],
    }


def load_movie_attributes(movie_ids: Iterable[str]) -> dict[str, MovieAttributes]:
    """Resolve attributes for many movies in a single batched lookup."""
    ids = sorted({m for m in movie_ids if m})
    if not ids:
        return {}

    result: dict[str, MovieAttributes] = {}
    with get_db(read_only=True) as conn:
        for chunk in _chunks(ids):
            placeholders = ','.join('?' * len(chunk))
            rows = conn.execute(f"""
                SELECT id, tmdb_id, title, year, genres, directors, cast_members, rating, embedding
                FROM movies WHERE id IN ({placeholders})
            """, chunk).fetchall()
            for row in rows:
                result[row['id']] = _row_to_attributes(row)
    return result


def load_local_candidates(limit: int, min_rating: float | None = None) -> list[Candidate]:
    """Highest-rated local movies with a catalog id, as 'local' candidates."""
    query = """
        SELECT id, tmdb_id, title, year, genres, directors, cast_members, rating, embedding
        FROM movies
        WHERE tmdb_id IS NOT NULL AND rating IS NOT NULL
    """
    params: list = []
    if min_rating is not None:
        query += " AND rating >= ?"
        params.append(min_rating)
    query += " ORDER BY rating DESC, tmdb_id ASC LIMIT ?"
    params.append(limit)

    with get_db(read_only=True) as conn:
        rows = conn.execute(query, params).fetchall()

    candidates = []
    for row in rows:
        attrs = _row_to_attributes(row)
        candidates.append(Candidate(
            id=attrs.tmdb_id,
            title=attrs.title,
            source="local",
            genres=attrs.genres,
            rating=attrs.rating,
            year=attrs.year,
            cast=attrs.cast,
            directors=attrs.directors,
            movie_id=attrs.movie_id,
            embedding=attrs.embedding,
        ))
    return candidates


def _candidate_from_payload(payload: dict) -> Candidate | None:
    try:
        return Candidate(
            id=int(payload['id']),
            title=str(payload.get('title') or ""),
            source=payload.get('source') or "trending",
            genres=list(payload.get('genres') or []),
            rating=payload.get('rating'),
            year=payload.get('year'),
            cast=list(payload.get('cast') or []),
            directors=list(payload.get('directors') or []),
        )
    except (KeyError, TypeError, ValueError) as e:
        logger.warning(f"Skipping malformed trending cache entry: {e}")
        return None


def load_trending_cache(time_window: str, max_age_hours: float) -> list[Candidate] | None:
    """
    Return cached trending candidates, or None if the cache is missing or stale.
    """
    with get_db(read_only=True) as conn:
        rows = conn.execute("""
            SELECT payload, cached_at FROM trending_cache
            WHERE time_window = ?
            ORDER BY position ASC
        """, (time_window,)).fetchall()

    if not rows:
        return None

    try:
        oldest = min(parse_timestamp(r['cached_at']) for r in rows)
    except ValueError as e:
        logger.warning(f"Trending cache has unreadable timestamps, treating as stale: {e}")
        return None

    age_hours = (datetime.now(timezone.utc) - oldest).total_seconds() / 3600
    if age_hours > max_age_hours:
        logger.debug(f"Trending cache for '{time_window}' is stale ({age_hours:.1f}h old)")
        return None

    candidates = []
    for row in rows:
        payload = load_json(row['payload'], default={})
        if not isinstance(payload, dict):
            continue
        candidate = _candidate_from_payload(payload)
        if candidate is not None:
            candidates.append(candidate)
    return candidates


# ---------------------------------------------------------------------------
# Writes (seeding and cache maintenance; the recommendation core only reads)
# ---------------------------------------------------------------------------

def save_trending_cache(time_window: str, candidates: list[Candidate]) -> None:
    """Replace the cached trending list for a time window."""
    cached_at = utc_now_iso()
    rows = [
        (time_window, c.id, position, json.dumps(c.to_dict()), cached_at)
        for position, c in enumerate(candidates)
    ]
    with get_db() as conn:
        conn.execute("DELETE FROM trending_cache WHERE time_window = ?", (time_window,))
        if rows:
            conn.executemany("""
                INSERT OR REPLACE INTO trending_cache (time_window, tmdb_id, position, payload, cached_at)
                VALUES (?, ?, ?, ?, ?)
            """, rows)


def upsert_movies(movies: list[dict]) -> int:
    """Insert or update local movie rows. Returns number of rows written."""
    now = utc_now_iso()
    rows = []
    for m in movies:
        embedding = m.get('embedding')
        rows.append((
            str(m['id']),
            m.get('tmdb_id'),
            m.get('title'),
            m.get('year'),
            json.dumps(list(m.get('genres') or [])),
            json.dumps(list(m.get('directors') or [])),
            json.dumps(list(m.get('cast') or [])),
            m.get('rating'),
            m.get('plot'),
            json.dumps(list(embedding)) if embedding is not None else None,
            now,
        ))
    if not rows:
        return 0
    with get_db() as conn:
        conn.executemany("""
            INSERT OR REPLACE INTO movies
            (id, tmdb_id, title, year, genres, directors, cast_members, rating, plot, embedding, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, rows)
    return len(rows)


def save_user_preferences(user_id: str, preferences: dict) -> None:
    with get_db() as conn:
        conn.execute("""
            INSERT OR REPLACE INTO user_profiles (id, preferences, updated_at)
            VALUES (?, ?, ?)
        """, (user_id, json.dumps(preferences), utc_now_iso()))


def record_rating(
    user_id: str,
    movie_id: str,
    rating: float | None,
    interested: bool = False,
    rated_at: str | None = None,
) -> None:
    with get_db() as conn:
        conn.execute("""
            INSERT OR REPLACE INTO ratings (user_id, movie_id, rating, interested, rated_at)
            VALUES (?, ?, ?, ?, ?)
        """, (user_id, movie_id, rating, int(interested), rated_at or utc_now_iso()))


def add_to_watchlist(user_id: str, movie_id: str, added_at: str | None = None, watched: bool = False) -> None:
    with get_db() as conn:
        conn.execute("""
            INSERT OR REPLACE INTO watchlist (user_id, movie_id, added_at, watched)
            VALUES (?, ?, ?, ?)
        """, (user_id, movie_id, added_at or utc_now_iso(), int(watched)))


def record_interaction(
    user_id: str,
    interaction_type: str,
    movie_id: str | None,
    metadata: dict | None = None,
    created_at: str | None = None,
) -> None:
    with get_db() as conn:
        conn.execute("""
            INSERT INTO user_interactions (user_id, interaction_type, movie_id, metadata, created_at)
            VALUES (?, ?, ?, ?, ?)
        """, (user_id, interaction_type, movie_id, json.dumps(metadata or {}), created_at or utc_now_iso()))


def get_stats() -> dict[str, int]:
    """Row counts per table, for the CLI."""
    counts = {}
    with get_db(read_only=True) as conn:
        for table in ('movies', 'user_profiles', 'ratings', 'watchlist', 'user_interactions', 'trending_cache'):
            counts[table] = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
    return counts


class SignalStore:
    """
    Read-only facade over the signal tables.

    Passed explicitly to the memory service and recommender so tests can swap
    in stubs.
    """

    def load_user_signals(self, user_id: str) -> dict:
        return load_user_signals(user_id)

    def load_movie_attributes(self, movie_ids: Iterable[str]) -> dict[str, MovieAttributes]:
        return load_movie_attributes(movie_ids)

    def load_local_candidates(self, limit: int, min_rating: float | None = None) -> list[Candidate]:
        return load_local_candidates(limit, min_rating=min_rating)
