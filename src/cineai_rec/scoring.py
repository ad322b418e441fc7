"""
Candidate scoring against a user's memory, plus the thin explanation layer
(reason text, confidence, match categories) shown alongside each pick.
"""
import logging
from datetime import datetime

import numpy as np

from .config import (
    CONFIDENCE_FULL_SIGNALS,
    DECAY_RATE_PER_DAY,
    HIGH_RATING_CONFIDENCE_BOOST,
    HIGH_RATING_THRESHOLD,
    MAX_CAST_CONSIDERED,
    NEUTRAL_AFFINITY,
    SCORE_WEIGHTS,
    SEMANTIC_CATEGORY_THRESHOLD,
    SEMANTIC_WEIGHT,
)
from .decay import decayed_weight
from .models import Candidate, MovieAttributes, UserMemory
from .preferences import rating_signal_weight

logger = logging.getLogger(__name__)


def _mean_affinity(values: list[str], preferences: dict[str, float]) -> float:
    if not preferences or not values:
        return NEUTRAL_AFFINITY
    return sum(preferences.get(v, 0.0) for v in values) / len(values)


def _max_affinity(values: list[str], preferences: dict[str, float]) -> float:
    if not preferences or not values:
        return NEUTRAL_AFFINITY
    return max(preferences.get(v, 0.0) for v in values)


def quality_prediction(rating: float | None, quality_threshold: float) -> float:
    """
    Map a 0-10 rating onto [0, 1]; ratings under the user's threshold count half.
    Unknown ratings are treated as middling.
    """
    if rating is None:
        return 0.5
    quality = min(1.0, max(0.0, (rating - 5) / 5))
    if rating < quality_threshold:
        quality *= 0.5
    return quality


def exploration_bonus(candidate: Candidate, memory: UserMemory) -> float:
    """Share of the candidate's genres the user has no weight for, scaled by exploration_weight."""
    if not candidate.genres:
        return 0.0
    unfamiliar = sum(1 for g in candidate.genres if g not in memory.genre_preferences)
    return unfamiliar / len(candidate.genres) * memory.exploration_weight


def preference_score(
    candidate: Candidate,
    memory: UserMemory,
    semantic_similarity: float | None = None,
) -> float:
    """
    Score a candidate in [0, 1] from the user's preference maps.

    Weighted blend of genre, director and lead-actor affinity, predicted
    quality and an exploration bonus. When a semantic similarity is supplied
    it takes SEMANTIC_WEIGHT of the final score.
    """
    components = {
        'genre': _mean_affinity(candidate.genres, memory.genre_preferences),
        'director': _max_affinity(candidate.directors, memory.director_preferences),
        'actor': _mean_affinity(candidate.cast[:MAX_CAST_CONSIDERED], memory.actor_preferences),
        'quality': quality_prediction(candidate.rating, memory.quality_threshold),
        'exploration': exploration_bonus(candidate, memory),
    }
    total_weight = sum(SCORE_WEIGHTS.values())
    base = sum(SCORE_WEIGHTS[k] * v for k, v in components.items()) / total_weight

    if semantic_similarity is None:
        return base
    return (1 - SEMANTIC_WEIGHT) * base + SEMANTIC_WEIGHT * max(0.0, semantic_similarity)


def cosine_similarity(a, b) -> float:
    """Cosine similarity of two vectors; 0.0 for empty, mismatched or zero-norm input."""
    if a is None or b is None:
        return 0.0
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.size == 0 or va.shape != vb.shape:
        return 0.0
    denom = np.linalg.norm(va) * np.linalg.norm(vb)
    if denom == 0:
        return 0.0
    return float(np.dot(va, vb) / denom)


def build_taste_vector(
    memory: UserMemory,
    attributes: dict[str, MovieAttributes] | None = None,
    now: datetime | None = None,
    decay_rate: float = DECAY_RATE_PER_DAY,
) -> np.ndarray | None:
    """
    Decayed, rating-weighted centroid of the embeddings of movies the user liked.

    Returns None when no liked movie has an embedding.
    """
    attributes = attributes if attributes is not None else memory.movie_attributes
    vectors = []
    weights = []
    dim = None

    for signal in memory.rated_movies:
        base = rating_signal_weight(signal)
        if base is None:
            continue
        attrs = attributes.get(signal.movie_id)
        if attrs is None or not attrs.embedding:
            continue
        vec = np.asarray(attrs.embedding, dtype=np.float64)
        if dim is None:
            dim = vec.shape
        elif vec.shape != dim:
            logger.debug(f"Skipping embedding for {signal.movie_id}: shape {vec.shape} != {dim}")
            continue
        vectors.append(vec)
        weights.append(decayed_weight(signal.rated_at, base, decay_rate, now=now))

    if not vectors or sum(weights) <= 0:
        return None
    return np.average(np.vstack(vectors), axis=0, weights=weights)


def profile_confidence(memory: UserMemory) -> float:
    """How much the profile can be trusted, from the amount of positive signal behind it."""
    liked = sum(1 for r in memory.rated_movies if rating_signal_weight(r) is not None)
    signals = liked + len(memory.watchlist_movies)
    return 0.5 + 0.5 * min(1.0, signals / CONFIDENCE_FULL_SIGNALS)


def _matching_genres(candidate: Candidate, preferred_genres: list[str]) -> list[str]:
    preferred = [p.lower() for p in preferred_genres]
    return [g for g in candidate.genres if any(p in g.lower() for p in preferred)]


def generate_reason(candidate: Candidate, similarity: float, preferred_genres: list[str]) -> str:
    if similarity > 0.8:
        reasons = ["Perfect match for your preferences"]
    elif similarity > 0.6:
        reasons = ["Great match for your taste"]
    elif similarity > 0.4:
        reasons = ["Good match for your interests"]
    else:
        reasons = ["Recommended for you"]

    matching = _matching_genres(candidate, preferred_genres)
    if matching:
        reasons.append(f"Matches your {', '.join(matching)} preferences")

    if candidate.rating is not None and candidate.rating > HIGH_RATING_THRESHOLD:
        reasons.append("Highly rated")

    return " • ".join(reasons)


def confidence_score(similarity: float, user_confidence: float, candidate: Candidate) -> float:
    confidence = similarity * user_confidence
    if candidate.rating is not None and candidate.rating > HIGH_RATING_THRESHOLD:
        confidence *= HIGH_RATING_CONFIDENCE_BOOST
    return min(1.0, max(0.0, confidence))


def match_categories(
    candidate: Candidate,
    semantic_similarity: float | None,
    preferred_genres: list[str],
) -> list[str]:
    categories = []
    if semantic_similarity is not None and semantic_similarity > SEMANTIC_CATEGORY_THRESHOLD:
        categories.append("semantic-match")
    if _matching_genres(candidate, preferred_genres):
        categories.append("genre-match")
    if candidate.rating is not None and candidate.rating > HIGH_RATING_THRESHOLD:
        categories.append("high-quality")
    return categories or ["general"]
