import logging
import threading
import time
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Callable, Iterable

from .config import (
    DECAY_RATE_PER_DAY,
    DEFAULT_EXPLORATION_WEIGHT,
    DEFAULT_QUALITY_THRESHOLD,
    MEMORY_CACHE_MAX_ENTRIES,
    MEMORY_CACHE_TTL_SECONDS,
    NOVELTY_PENALTY,
    PROMPT_RECENT_INTERACTIONS,
    PROMPT_SEEN_SAMPLE,
    PROMPT_TOP_GENRES,
    RECENCY_WINDOW_DAYS,
)
from .decay import is_recent, parse_timestamp
from .models import (
    Candidate,
    Interaction,
    MovieAttributes,
    RatingSignal,
    ScoredRecommendation,
    UserMemory,
    WatchlistEntry,
    parse_interaction_metadata,
)
from .novelty import apply_penalties
from .preferences import aggregate

logger = logging.getLogger(__name__)


class MemoryCache:
    """
    Short-lived per-user cache of built memories.

    Entries expire after ttl_seconds and the cache holds at most max_entries,
    evicting the oldest-inserted entry first. Expired entries are swept on
    writes. All operations take one lock; entries for different users never
    interact.
    """

    def __init__(
        self,
        ttl_seconds: float = MEMORY_CACHE_TTL_SECONDS,
        max_entries: int = MEMORY_CACHE_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max(1, max_entries)
        self._clock = clock
        self._entries: OrderedDict[str, tuple[float, UserMemory]] = OrderedDict()
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    def get(self, user_id: str) -> UserMemory | None:
        with self._lock:
            entry = self._entries.get(user_id)
            if entry is None:
                self._misses += 1
                return None
            stored_at, memory = entry
            if self._clock() - stored_at >= self.ttl_seconds:
                del self._entries[user_id]
                self._misses += 1
                return None
            self._hits += 1
            return memory

    def set(self, user_id: str, memory: UserMemory) -> None:
        with self._lock:
            self._sweep_locked()
            # Re-inserting moves the user to the back of the eviction order
            self._entries.pop(user_id, None)
            self._entries[user_id] = (self._clock(), memory)
            while len(self._entries) > self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug(f"Memory cache full, evicted user {evicted}")

    def invalidate(self, user_id: str) -> bool:
        with self._lock:
            return self._entries.pop(user_id, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def sweep(self) -> int:
        """Drop expired entries. Returns how many were removed."""
        with self._lock:
            return self._sweep_locked()

    def _sweep_locked(self) -> int:
        now = self._clock()
        expired = [uid for uid, (stored_at, _) in self._entries.items() if now - stored_at >= self.ttl_seconds]
        for uid in expired:
            del self._entries[uid]
        return len(expired)

    def stats(self) -> dict[str, int]:
        with self._lock:
            return {'hits': self._hits, 'misses': self._misses, 'size': len(self._entries)}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _read_preference_float(preferences: dict, key: str, default: float, user_id: str) -> float:
    value = preferences.get(key)
    if value is None:
        return default
    if isinstance(value, bool):
        logger.warning(f"Ignoring non-numeric {key} for user {user_id}")
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        logger.warning(f"Ignoring non-numeric {key}={value!r} for user {user_id}")
        return default


class UserMemoryService:
    """
    Builds the per-user memory snapshot the recommender works from.

    Reads go through `store` (anything with load_user_signals and
    load_movie_attributes). Store failures never escape: they are logged and
    the caller gets UserMemory.empty().
    """

    def __init__(
        self,
        store,
        cache: MemoryCache | None = None,
        window_days: int = RECENCY_WINDOW_DAYS,
        decay_rate: float = DECAY_RATE_PER_DAY,
        clock: Callable[[], datetime] | None = None,
    ):
        self.store = store
        self.cache = cache
        self.window_days = window_days
        self.decay_rate = decay_rate
        self._clock = clock or _utc_now

    def invalidate(self, user_id: str) -> None:
        """Forget any cached memory for a user (call after they rate, watchlist, etc)."""
        if self.cache is not None:
            self.cache.invalidate(user_id)

    def build_memory(self, user_id: str) -> UserMemory:
        if self.cache is not None:
            cached = self.cache.get(user_id)
            if cached is not None:
                logger.debug(f"Memory cache hit for user {user_id}")
                return cached

        try:
            signals = self.store.load_user_signals(user_id)
        except Exception as e:
            logger.error(f"Memory build failed for user {user_id} during load_user_signals: {e}")
            return UserMemory.empty()

        now = self._clock()
        ratings = self._parse_ratings(signals.get('ratings') or [], user_id)
        watchlist = self._parse_watchlist(signals.get('watchlist') or [], user_id)
        interactions = self._parse_interactions(signals.get('interactions') or [], user_id)

        referenced = {r.movie_id for r in ratings}
        referenced.update(w.movie_id for w in watchlist)
        referenced.update(i.movie_id for i in interactions)

        try:
            attributes = self.store.load_movie_attributes(referenced) if referenced else {}
        except Exception as e:
            logger.error(f"Memory build failed for user {user_id} during load_movie_attributes: {e}")
            return UserMemory.empty()

        memory = self._assemble(
            signals.get('preferences') or {}, ratings, watchlist, interactions, attributes, now, user_id
        )

        if self.cache is not None:
            self.cache.set(user_id, memory)

        logger.debug(
            f"Built memory for user {user_id}: {len(memory.seen_movie_ids)} seen, "
            f"{len(memory.seen_recent)} recent, {len(memory.genre_preferences)} genres"
        )
        return memory

    def _assemble(
        self,
        preferences: dict,
        ratings: list[RatingSignal],
        watchlist: list[WatchlistEntry],
        interactions: list[Interaction],
        attributes: dict[str, MovieAttributes],
        now: datetime,
        user_id: str,
    ) -> UserMemory:
        seen: set[int] = set()
        seen_recent: set[int] = set()

        touched = [(r.movie_id, r.rated_at) for r in ratings] + [(w.movie_id, w.added_at) for w in watchlist]
        for movie_id, ts in touched:
            attrs = attributes.get(movie_id)
            if attrs is None or attrs.tmdb_id is None:
                continue
            seen.add(attrs.tmdb_id)
            if is_recent(ts, self.window_days, now=now):
                seen_recent.add(attrs.tmdb_id)

        recent_interactions = sorted(
            (i for i in interactions if is_recent(i.created_at, self.window_days, now=now)),
            key=lambda i: i.created_at,
            reverse=True,
        )

        weights = aggregate(ratings, interactions, attributes, now=now, decay_rate=self.decay_rate)

        quality = _read_preference_float(preferences, 'quality_threshold', DEFAULT_QUALITY_THRESHOLD, user_id)
        exploration = _read_preference_float(preferences, 'exploration_weight', DEFAULT_EXPLORATION_WEIGHT, user_id)
        exploration = min(1.0, max(0.0, exploration))

        return UserMemory(
            seen_movie_ids=seen,
            seen_recent=seen_recent,
            rated_movies=ratings,
            watchlist_movies=watchlist,
            genre_preferences=weights.genres,
            director_preferences=weights.directors,
            actor_preferences=weights.actors,
            recent_interactions=recent_interactions,
            quality_threshold=quality,
            exploration_weight=exploration,
            movie_attributes=attributes,
        )

    def _parse_ratings(self, rows: Iterable[dict], user_id: str) -> list[RatingSignal]:
        out = []
        for row in rows:
            try:
                rated_at = parse_timestamp(row.get('rated_at'))
            except ValueError as e:
                logger.warning(f"Skipping rating of {row.get('movie_id')} for user {user_id}: bad timestamp ({e})")
                continue
            rating = row.get('rating')
            if rating is not None:
                try:
                    if isinstance(rating, bool):
                        raise TypeError("boolean rating")
                    rating = float(rating)
                except (TypeError, ValueError) as e:
                    logger.warning(f"Ignoring rating value of {row.get('movie_id')} for user {user_id}: {rating!r} ({e})")
                    rating = None
            out.append(RatingSignal(
                movie_id=row['movie_id'],
                rating=rating,
                interested=bool(row.get('interested')),
                rated_at=rated_at,
            ))
        return out

    def _parse_watchlist(self, rows: Iterable[dict], user_id: str) -> list[WatchlistEntry]:
        out = []
        for row in rows:
            try:
                added_at = parse_timestamp(row.get('added_at'))
            except ValueError as e:
                logger.warning(f"Skipping watchlist entry {row.get('movie_id')} for user {user_id}: bad timestamp ({e})")
                continue
            out.append(WatchlistEntry(
                movie_id=row['movie_id'],
                added_at=added_at,
                watched=bool(row.get('watched')),
            ))
        return out

    def _parse_interactions(self, rows: Iterable[dict], user_id: str) -> list[Interaction]:
        out = []
        for row in rows:
            event_type = row.get('interaction_type') or row.get('event_type') or ''
            try:
                created_at = parse_timestamp(row.get('created_at'))
            except ValueError as e:
                logger.warning(f"Skipping '{event_type}' interaction for user {user_id}: bad timestamp ({e})")
                continue
            out.append(Interaction(
                event_type=event_type,
                movie_id=row.get('movie_id'),
                metadata=parse_interaction_metadata(event_type, row.get('metadata')),
                created_at=created_at,
            ))
        return out

    # -----------------------------------------------------------------------
    # Conveniences for callers that only hold a user id
    # -----------------------------------------------------------------------

    def filter_unseen(self, user_id: str, candidates: list[Candidate]) -> list[Candidate]:
        seen = self.build_memory(user_id).seen_movie_ids
        return [c for c in candidates if c.id not in seen]

    def enrich_prompt(self, user_id: str, base_prompt: str) -> str:
        """Append a user-context block to an LLM prompt. Unknown users get the prompt back unchanged."""
        memory = self.build_memory(user_id)
        if not memory.seen_movie_ids:
            return base_prompt

        genre_list = ', '.join(
            f"{genre} ({weight:.2f})" for genre, weight in memory.top_genres(PROMPT_TOP_GENRES)
        )
        recent = ', '.join(
            str(i.movie_id) for i in memory.recent_interactions[:PROMPT_RECENT_INTERACTIONS] if i.movie_id
        )
        seen_sample = ', '.join(str(m) for m in sorted(memory.seen_movie_ids)[:PROMPT_SEEN_SAMPLE])

        return (
            f"{base_prompt}\n\n"
            f"User Context:\n"
            f"- Favorite genres: {genre_list or 'Not enough data yet'}\n"
            f"- Quality standard: {memory.quality_threshold}/10\n"
            f"- Recently interacted with movies: {recent or 'None'}\n\n"
            f"Important: DO NOT recommend any movies the user has already seen.\n"
            f"Already seen movies (sample): {seen_sample}"
        )

    def apply_novelty_penalties(
        self,
        user_id: str,
        recommendations: list[ScoredRecommendation],
        penalty: float = NOVELTY_PENALTY,
    ) -> list[ScoredRecommendation]:
        memory = self.build_memory(user_id)
        return apply_penalties(recommendations, memory.seen_recent, penalty=penalty)
