"""Typed signal, memory and candidate models shared across the recommendation core."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Union

from .config import DEFAULT_QUALITY_THRESHOLD, DEFAULT_EXPLORATION_WEIGHT

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Raw signals
# ---------------------------------------------------------------------------

@dataclass
class RatingSignal:
    movie_id: str
    rating: float | None
    interested: bool
    rated_at: datetime


@dataclass
class WatchlistEntry:
    movie_id: str
    added_at: datetime
    watched: bool = False


# ---------------------------------------------------------------------------
# Interaction metadata (one variant per known event type)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ViewDetailsMetadata:
    source: str | None = None
    duration_seconds: float | None = None


@dataclass(frozen=True)
class RecommendationClickMetadata:
    source: str | None = None
    position: int | None = None
    recommendation_id: str | None = None


@dataclass(frozen=True)
class AddToWatchlistMetadata:
    source: str | None = None


@dataclass(frozen=True)
class SearchMetadata:
    query: str | None = None
    mood: str | None = None
    genres: tuple[str, ...] = ()


@dataclass(frozen=True)
class RatingMetadata:
    rating: float | None = None


@dataclass(frozen=True)
class UnknownMetadata:
    raw: dict[str, Any] = field(default_factory=dict)


InteractionMetadata = Union[
    ViewDetailsMetadata,
    RecommendationClickMetadata,
    AddToWatchlistMetadata,
    SearchMetadata,
    RatingMetadata,
    UnknownMetadata,
]


def _opt_str(value: Any) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise TypeError(f"expected string, got {type(value).__name__}")
    return value


def _opt_float(value: Any) -> float | None:
    if value is None:
        return None
    if isinstance(value, bool):
        raise TypeError("expected number, got bool")
    return float(value)


def _opt_int(value: Any) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool):
        raise TypeError("expected integer, got bool")
    return int(value)


def _build_view_details(raw: dict) -> ViewDetailsMetadata:
    return ViewDetailsMetadata(
        source=_opt_str(raw.get('source')),
        duration_seconds=_opt_float(raw.get('duration_seconds', raw.get('duration'))),
    )


def _build_recommendation_click(raw: dict) -> RecommendationClickMetadata:
    return RecommendationClickMetadata(
        source=_opt_str(raw.get('source')),
        position=_opt_int(raw.get('position')),
        recommendation_id=_opt_str(raw.get('recommendation_id')),
    )


def _build_add_to_watchlist(raw: dict) -> AddToWatchlistMetadata:
    return AddToWatchlistMetadata(source=_opt_str(raw.get('source')))


def _build_search(raw: dict) -> SearchMetadata:
    genres = raw.get('genres') or []
    if not isinstance(genres, list):
        raise TypeError("genres must be a list")
    return SearchMetadata(
        query=_opt_str(raw.get('query')),
        mood=_opt_str(raw.get('mood')),
        genres=tuple(str(g) for g in genres),
    )


def _build_rating(raw: dict) -> RatingMetadata:
    return RatingMetadata(rating=_opt_float(raw.get('rating')))


_METADATA_BUILDERS = {
    'view_details': _build_view_details,
    'recommendation_click': _build_recommendation_click,
    'add_to_watchlist': _build_add_to_watchlist,
    'search': _build_search,
    'rate': _build_rating,
    'rating': _build_rating,
}


def parse_interaction_metadata(event_type: str, raw: Any) -> InteractionMetadata:
    """
    Turn a stored metadata blob into its typed variant.

    Accepts a dict or a JSON string. Anything that cannot be decoded becomes an
    empty UnknownMetadata; payloads that decode but don't fit the variant for
    their event type are kept verbatim in UnknownMetadata.
    """
    if raw is None or raw == "":
        payload: dict = {}
    elif isinstance(raw, dict):
        payload = raw
    else:
        try:
            payload = json.loads(raw)
        except (json.JSONDecodeError, TypeError) as e:
            logger.warning(f"Failed to parse metadata for '{event_type}' event: {e}")
            return UnknownMetadata()
        if not isinstance(payload, dict):
            logger.warning(f"Metadata for '{event_type}' event is not an object, ignoring")
            return UnknownMetadata()

    builder = _METADATA_BUILDERS.get(event_type)
    if builder is None:
        return UnknownMetadata(raw=dict(payload))

    try:
        return builder(payload)
    except (TypeError, ValueError) as e:
        logger.warning(f"Metadata for '{event_type}' event failed validation: {e}")
        return UnknownMetadata(raw=dict(payload))


@dataclass
class Interaction:
    event_type: str
    movie_id: str
    metadata: InteractionMetadata
    created_at: datetime


# ---------------------------------------------------------------------------
# Movies and memory
# ---------------------------------------------------------------------------

@dataclass
class MovieAttributes:
    """Attributes of a locally stored movie, resolved in one batched lookup."""
    movie_id: str
    tmdb_id: int | None = None
    title: str = ""
    genres: list[str] = field(default_factory=list)
    directors: list[str] = field(default_factory=list)
    cast: list[str] = field(default_factory=list)
    rating: float | None = None
    year: int | None = None
    embedding: list[float] | None = None


@dataclass
class PreferenceWeights:
    genres: dict[str, float] = field(default_factory=dict)
    directors: dict[str, float] = field(default_factory=dict)
    actors: dict[str, float] = field(default_factory=dict)

    def is_empty(self) -> bool:
        return not (self.genres or self.directors or self.actors)


@dataclass
class UserMemory:
    """Per-request snapshot of everything the recommender knows about a user."""
    seen_movie_ids: set[int] = field(default_factory=set)
    seen_recent: set[int] = field(default_factory=set)
    rated_movies: list[RatingSignal] = field(default_factory=list)
    watchlist_movies: list[WatchlistEntry] = field(default_factory=list)
    genre_preferences: dict[str, float] = field(default_factory=dict)
    director_preferences: dict[str, float] = field(default_factory=dict)
    actor_preferences: dict[str, float] = field(default_factory=dict)
    recent_interactions: list[Interaction] = field(default_factory=list)
    quality_threshold: float = DEFAULT_QUALITY_THRESHOLD
    exploration_weight: float = DEFAULT_EXPLORATION_WEIGHT
    # Attributes resolved while building; kept so rankers don't re-query the store
    movie_attributes: dict[str, MovieAttributes] = field(default_factory=dict, repr=False)

    @classmethod
    def empty(cls) -> "UserMemory":
        return cls()

    def has_preferences(self) -> bool:
        return bool(self.genre_preferences or self.director_preferences or self.actor_preferences)

    def top_genres(self, n: int = 5) -> list[tuple[str, float]]:
        return sorted(self.genre_preferences.items(), key=lambda x: -x[1])[:n]


# ---------------------------------------------------------------------------
# Candidates and output
# ---------------------------------------------------------------------------

@dataclass
class Candidate:
    """A movie proposed for recommendation, tagged with where it came from."""
    id: int
    title: str
    source: str
    genres: list[str] = field(default_factory=list)
    rating: float | None = None
    year: int | None = None
    cast: list[str] = field(default_factory=list)
    directors: list[str] = field(default_factory=list)
    movie_id: str | None = None
    embedding: list[float] | None = field(default=None, repr=False)

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'title': self.title,
            'source': self.source,
            'genres': list(self.genres),
            'rating': self.rating,
            'year': self.year,
            'cast': list(self.cast),
            'directors': list(self.directors),
            'movieId': self.movie_id,
        }


@dataclass
class ScoredRecommendation:
    movie: Candidate
    score: float
    novelty_penalty: bool = False
    original_score: float | None = None
    reason: str = ""
    confidence: float = 0.0
    match_categories: list[str] = field(default_factory=list)
    semantic_similarity: float | None = None

    def to_dict(self) -> dict:
        data = {
            'movie': self.movie.to_dict(),
            'score': round(self.score, 4),
            'noveltyPenalty': self.novelty_penalty,
            'reason': self.reason,
            'confidence': round(self.confidence, 3),
            'matchCategories': list(self.match_categories),
        }
        if self.original_score is not None:
            data['originalScore'] = round(self.original_score, 4)
        if self.semantic_similarity is not None:
            data['semanticSimilarity'] = round(self.semantic_similarity, 4)
        return data


@dataclass
class RecommendationInsights:
    method: str = "fallback"
    semantic_matches: int = 0
    total_candidates: int = 0
    diversity_score: float = 0.0

    def to_dict(self) -> dict:
        return {
            'method': self.method,
            'semanticMatches': self.semantic_matches,
            'totalCandidates': self.total_candidates,
            'diversityScore': self.diversity_score,
        }


@dataclass
class RecommendationResult:
    recommendations: list[ScoredRecommendation] = field(default_factory=list)
    insights: RecommendationInsights = field(default_factory=RecommendationInsights)

    def to_dict(self) -> dict:
        return {
            'recommendations': [r.to_dict() for r in self.recommendations],
            'insights': self.insights.to_dict(),
        }
