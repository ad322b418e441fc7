"""
Configuration constants for the CineAI recommendation core.

This module centralizes all magic numbers and configurable parameters.
Values can be overridden via environment variables.
"""
import os
import logging
from pathlib import Path

logger = logging.getLogger(__name__)


def _get_float_env(key: str, default: float, min_val: float = 0, max_val: float | None = None) -> float:
    """
    Safely parse float from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value
        max_val: Maximum allowed value (None = unbounded)

    Returns:
        Validated float value
    """
    try:
        val = float(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        if max_val is not None and val > max_val:
            logger.warning(f"{key}={val} is above maximum {max_val}, using {max_val}")
            return max_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


def _get_int_env(key: str, default: int, min_val: int = 1) -> int:
    """
    Safely parse integer from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value

    Returns:
        Validated integer value
    """
    try:
        val = int(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


# Database Configuration
DB_PATH = Path(os.environ.get("CINEAI_DB", "data/cineai.db"))
SQLITE_PARAM_CHUNK = 900  # SQLite caps bound parameters at 999

# External I/O
FETCH_TIMEOUT = _get_float_env("CINEAI_FETCH_TIMEOUT", 8.0, min_val=0.5)
MAX_HTTP_RETRIES = 3

# TMDB Configuration
TMDB_API_KEY = os.environ.get("TMDB_API_KEY", "")
TMDB_BASE_URL = os.environ.get("TMDB_BASE_URL", "https://api.themoviedb.org/3")
TRENDING_CACHE_TTL_HOURS = _get_float_env("CINEAI_TRENDING_TTL_HOURS", 24.0, min_val=0.0)
TRENDING_TIME_WINDOW = "week"

# Memory cache
MEMORY_CACHE_TTL_SECONDS = _get_float_env("CINEAI_MEMORY_CACHE_TTL", 120.0, min_val=0.0)
MEMORY_CACHE_MAX_ENTRIES = _get_int_env("CINEAI_MEMORY_CACHE_MAX_ENTRIES", 100, min_val=1)

# Recency / decay
RECENCY_WINDOW_DAYS = _get_int_env("CINEAI_RECENCY_WINDOW_DAYS", 30, min_val=1)
DECAY_RATE_PER_DAY = _get_float_env("CINEAI_DECAY_RATE", 0.95, min_val=0.0, max_val=1.0)

# Memory defaults
DEFAULT_QUALITY_THRESHOLD = 7.0
DEFAULT_EXPLORATION_WEIGHT = 0.2

# Preference aggregation
RELEVANT_RATING_MIN = 3
INTERESTED_BASE_WEIGHT = 0.5
BEHAVIOR_WEIGHTS = {
    'add_to_watchlist': 0.4,
    'recommendation_click': 0.3,
    'view_details': 0.2,
}
MAX_CAST_CONSIDERED = 3  # Lead-billed actors only

# Blending
DEFAULT_PRIMARY_RATIO = _get_float_env("CINEAI_BLEND_RATIO", 0.7, min_val=0.0, max_val=1.0)
CANDIDATE_POOL_MULTIPLIER = 5  # Candidates fetched per requested slot
MAX_CANDIDATE_POOL = 100

# Novelty
NOVELTY_PENALTY = 0.8

# Scoring weights for the preference-based ranker
SCORE_WEIGHTS = {
    'genre': 0.35,
    'director': 0.15,
    'actor': 0.10,
    'quality': 0.25,
    'exploration': 0.15,
}
SEMANTIC_WEIGHT = 0.4  # Share of the final score given to semantic similarity when available
NEUTRAL_AFFINITY = 0.3  # Affinity used when a candidate has no matching attribute
SEMANTIC_MATCH_THRESHOLD = 0.6
SEMANTIC_CATEGORY_THRESHOLD = 0.7
HIGH_RATING_THRESHOLD = 8.0
HIGH_RATING_CONFIDENCE_BOOST = 1.2
CONFIDENCE_FULL_SIGNALS = 20  # Liked/watchlisted titles needed for full profile confidence

# Prompt enrichment
PROMPT_TOP_GENRES = 5
PROMPT_RECENT_INTERACTIONS = 5
PROMPT_SEEN_SAMPLE = 50
