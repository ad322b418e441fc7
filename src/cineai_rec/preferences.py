import logging
from collections import defaultdict
from datetime import datetime
from typing import Iterable

from .decay import decayed_weight
from .models import Interaction, MovieAttributes, PreferenceWeights, RatingSignal
from .config import (
    BEHAVIOR_WEIGHTS,
    DECAY_RATE_PER_DAY,
    INTERESTED_BASE_WEIGHT,
    MAX_CAST_CONSIDERED,
    RELEVANT_RATING_MIN,
)

logger = logging.getLogger(__name__)


def rating_base_weight(rating: float) -> float:
    """Map a 1-5 star rating onto [0.2, 1.0] (1 -> 0.2, 5 -> 1.0)."""
    return (rating - 1) / 4 * 0.8 + 0.2


def rating_signal_weight(signal: RatingSignal) -> float | None:
    """Base weight for a rating row, or None if it carries no positive signal."""
    if signal.rating is not None and signal.rating >= RELEVANT_RATING_MIN:
        return rating_base_weight(signal.rating)
    if signal.interested:
        if signal.rating is not None:
            return rating_base_weight(signal.rating)
        return INTERESTED_BASE_WEIGHT
    return None


def normalize_weights(weights: dict[str, float]) -> dict[str, float]:
    """Scale a weight map so its largest entry is 1.0. Empty stays empty."""
    if not weights:
        return {}
    max_weight = max(weights.values())
    if max_weight <= 0:
        return dict(weights)
    return {k: v / max_weight for k, v in weights.items()}


def _accumulate(
    genres: dict[str, float],
    directors: dict[str, float],
    actors: dict[str, float],
    attrs: MovieAttributes,
    weight: float,
) -> None:
    # Each attribute value gets the full weight; multi-genre films are not split
    for g in dict.fromkeys(attrs.genres):
        genres[g] += weight
    for d in dict.fromkeys(attrs.directors):
        directors[d] += weight
    for a in dict.fromkeys(attrs.cast[:MAX_CAST_CONSIDERED]):
        actors[a] += weight


def aggregate(
    ratings: Iterable[RatingSignal],
    behavior_events: Iterable[Interaction],
    attributes_by_id: dict[str, MovieAttributes],
    now: datetime | None = None,
    decay_rate: float = DECAY_RATE_PER_DAY,
) -> PreferenceWeights:
    """
    Combine decayed per-item signals into normalized genre/director/actor weights.

    Only relevant signals count: ratings of 3+ stars, titles flagged as
    interesting, and view/click/watchlist behavior events. Each signal's base
    weight is decayed by its own timestamp before being credited.

    Args:
        ratings: Rating rows for the user
        behavior_events: Interaction events for the user
        attributes_by_id: Movie attributes keyed by local movie id
        now: Reference time for decay (default: current UTC time)
        decay_rate: Fraction of weight retained per day

    Returns:
        PreferenceWeights whose maps are each normalized to a max of 1.0
    """
    genres: dict[str, float] = defaultdict(float)
    directors: dict[str, float] = defaultdict(float)
    actors: dict[str, float] = defaultdict(float)
    missing = 0

    for signal in ratings:
        base = rating_signal_weight(signal)
        if base is None:
            continue
        attrs = attributes_by_id.get(signal.movie_id)
        if attrs is None:
            missing += 1
            continue
        weight = decayed_weight(signal.rated_at, base, decay_rate, now=now)
        _accumulate(genres, directors, actors, attrs, weight)

    for event in behavior_events:
        base = BEHAVIOR_WEIGHTS.get(event.event_type)
        if base is None:
            continue
        attrs = attributes_by_id.get(event.movie_id)
        if attrs is None:
            missing += 1
            continue
        weight = decayed_weight(event.created_at, base, decay_rate, now=now)
        _accumulate(genres, directors, actors, attrs, weight)

    if missing:
        logger.debug(f"Skipped {missing} signals with no resolved movie attributes")

    return PreferenceWeights(
        genres=normalize_weights(dict(genres)),
        directors=normalize_weights(dict(directors)),
        actors=normalize_weights(dict(actors)),
    )
