import argparse
import atexit
import json
import logging
import re

from .database import (
    SignalStore, init_db, close_pool, get_stats, upsert_movies, save_user_preferences,
    record_rating, add_to_watchlist, record_interaction,
)
from .config import TMDB_API_KEY, TRENDING_TIME_WINDOW, DEFAULT_PRIMARY_RATIO
from .memory import MemoryCache, UserMemoryService
from .recommender import SmartRecommender
from .tmdb import TMDBClient, TrendingSource

logger = logging.getLogger(__name__)

# Register cleanup on exit
atexit.register(close_pool)


def _validate_user_id(user_id: str) -> str:
    """
    Validate a user id (UUID-like or slug).
    Raises ValueError on anything else.
    """
    cleaned = user_id.strip()
    if not cleaned or not re.match(r'^[A-Za-z0-9_-]+$', cleaned):
        raise ValueError(f"Invalid user id: '{user_id}'")
    return cleaned


def _parse_ratio(value: str) -> float:
    try:
        ratio = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"ratio must be a number, got '{value}'")
    if not 0.0 <= ratio <= 1.0:
        raise argparse.ArgumentTypeError(f"ratio must be between 0 and 1, got {ratio}")
    return ratio


def _build_trending_source() -> TrendingSource:
    client = TMDBClient() if TMDB_API_KEY else None
    return TrendingSource(client=client)


def _build_memory_service() -> UserMemoryService:
    return UserMemoryService(SignalStore(), cache=MemoryCache())


def cmd_init_db(args: argparse.Namespace) -> None:
    """Create the local signal store tables."""
    init_db()
    logger.info("Database initialized")


def cmd_stats(args: argparse.Namespace) -> None:
    """Show database statistics."""
    stats = get_stats()
    logger.info("\nDatabase Statistics:")
    for table, count in stats.items():
        logger.info(f"  {table}: {count}")


def cmd_memory(args: argparse.Namespace) -> None:
    """Show a user's unified memory."""
    user_id = _validate_user_id(args.user_id)
    memory = _build_memory_service().build_memory(user_id)

    if args.json:
        logger.info(json.dumps({
            'seenMovieIds': sorted(memory.seen_movie_ids),
            'seenRecent': sorted(memory.seen_recent),
            'genrePreferences': memory.genre_preferences,
            'directorPreferences': memory.director_preferences,
            'actorPreferences': memory.actor_preferences,
            'qualityThreshold': memory.quality_threshold,
            'explorationWeight': memory.exploration_weight,
        }, indent=2))
        return

    logger.info(f"\nMemory for {user_id}")
    logger.info(f"  Seen: {len(memory.seen_movie_ids)} ({len(memory.seen_recent)} recently)")
    logger.info(f"  Ratings: {len(memory.rated_movies)}, watchlist: {len(memory.watchlist_movies)}")
    logger.info(f"  Recent interactions: {len(memory.recent_interactions)}")
    logger.info(f"  Quality threshold: {memory.quality_threshold}/10, exploration: {memory.exploration_weight:.2f}")

    for title, prefs in (
        ("Top genres", memory.genre_preferences),
        ("Top directors", memory.director_preferences),
        ("Top actors", memory.actor_preferences),
    ):
        if prefs:
            logger.info(f"\n{title}:")
            for label, weight in sorted(prefs.items(), key=lambda x: -x[1])[:10]:
                logger.info(f"  {label}: {weight:.2f}")


def cmd_recommend(args: argparse.Namespace) -> None:
    """Generate recommendations for a user."""
    user_id = _validate_user_id(args.user_id)
    recommender = SmartRecommender(
        _build_memory_service(),
        SignalStore(),
        trending_source=None if args.no_trending else _build_trending_source(),
        primary_ratio=args.ratio,
    )
    result = recommender.recommend(user_id, limit=args.limit, exclude_seen=not args.include_seen)

    if args.json:
        logger.info(json.dumps(result.to_dict(), indent=2))
        return

    insights = result.insights
    if not result.recommendations:
        logger.info(f"No recommendations available for {user_id}")
        return

    logger.info(f"\nTop {len(result.recommendations)} recommendations for {user_id} ({insights.method}):")
    for i, r in enumerate(result.recommendations, 1):
        year = f" ({r.movie.year})" if r.movie.year else ""
        penalty = " [seen recently]" if r.novelty_penalty else ""
        logger.info(f"{i}. {r.movie.title}{year} [{r.movie.source}] - Score: {r.score:.3f}{penalty}")
        logger.info(f"   Why: {r.reason}")
        logger.info(f"   Confidence: {r.confidence:.0%}  Categories: {', '.join(r.match_categories)}")

    logger.info(
        f"\nCandidates considered: {insights.total_candidates}, "
        f"semantic matches: {insights.semantic_matches}, diversity: {insights.diversity_score:.2f}"
    )


def cmd_sync_trending(args: argparse.Namespace) -> None:
    """Refresh the trending cache from TMDB."""
    if not TMDB_API_KEY:
        logger.error("TMDB_API_KEY is not set; cannot fetch trending movies")
        return

    init_db()
    with TMDBClient() as client:
        source = TrendingSource(client=client, time_window=args.window)
        fetched = source.refresh(pages=args.pages, progress=True)
    logger.info(f"Trending cache now holds {len(fetched)} movies ({args.window})")


def cmd_prompt(args: argparse.Namespace) -> None:
    """Print a prompt enriched with the user's context."""
    user_id = _validate_user_id(args.user_id)
    logger.info(_build_memory_service().enrich_prompt(user_id, args.text))


def cmd_seed(args: argparse.Namespace) -> None:
    """
    Load movies and user signals from a JSON fixture.

    Expected keys (all optional): movies, preferences (user id -> object),
    ratings, watchlist, interactions.
    """
    with open(args.file, 'r') as f:
        data = json.load(f)

    init_db()

    n_movies = upsert_movies(data.get('movies', []))
    for user_id, prefs in (data.get('preferences') or {}).items():
        save_user_preferences(user_id, prefs)
    for r in data.get('ratings', []):
        record_rating(r['user_id'], r['movie_id'], r.get('rating'), r.get('interested', False), r.get('rated_at'))
    for w in data.get('watchlist', []):
        add_to_watchlist(w['user_id'], w['movie_id'], w.get('added_at'), w.get('watched', False))
    for i in data.get('interactions', []):
        record_interaction(
            i['user_id'], i['interaction_type'], i.get('movie_id'), i.get('metadata'), i.get('created_at')
        )

    logger.info(
        f"Seeded {n_movies} movies, {len(data.get('ratings', []))} ratings, "
        f"{len(data.get('watchlist', []))} watchlist entries, "
        f"{len(data.get('interactions', []))} interactions from {args.file}"
    )


def main():
    parser = argparse.ArgumentParser(description="CineAI Recommender")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init-db", help="Create database tables")
    init_parser.set_defaults(func=cmd_init_db)

    stats_parser = subparsers.add_parser("stats", help="Show database statistics")
    stats_parser.set_defaults(func=cmd_stats)

    memory_parser = subparsers.add_parser("memory", help="Show a user's unified memory")
    memory_parser.add_argument("user_id", help="User id")
    memory_parser.add_argument("--json", action="store_true", help="Output as JSON")
    memory_parser.set_defaults(func=cmd_memory)

    rec_parser = subparsers.add_parser("recommend", help="Generate recommendations")
    rec_parser.add_argument("user_id", help="User id")
    rec_parser.add_argument("--limit", type=int, default=10, help="Number of recommendations")
    rec_parser.add_argument("--ratio", type=_parse_ratio, default=DEFAULT_PRIMARY_RATIO,
                            help="Share of trending picks (0-1)")
    rec_parser.add_argument("--include-seen", action="store_true",
                            help="Keep already seen titles (recent ones are penalized)")
    rec_parser.add_argument("--no-trending", action="store_true", help="Use only the local catalog")
    rec_parser.add_argument("--json", action="store_true", help="Output as JSON")
    rec_parser.set_defaults(func=cmd_recommend)

    sync_parser = subparsers.add_parser("sync-trending", help="Refresh trending cache from TMDB")
    sync_parser.add_argument("--pages", type=int, default=3, help="Pages of 20 movies to fetch")
    sync_parser.add_argument("--window", choices=["day", "week"], default=TRENDING_TIME_WINDOW,
                             help="TMDB trending window")
    sync_parser.set_defaults(func=cmd_sync_trending)

    prompt_parser = subparsers.add_parser("prompt", help="Enrich a prompt with user context")
    prompt_parser.add_argument("user_id", help="User id")
    prompt_parser.add_argument("text", help="Base prompt")
    prompt_parser.set_defaults(func=cmd_prompt)

    seed_parser = subparsers.add_parser("seed", help="Load movies and signals from a JSON file")
    seed_parser.add_argument("file", help="JSON fixture path")
    seed_parser.set_defaults(func=cmd_seed)

    args = parser.parse_args()

    # Configure logging based on verbosity
    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    args.func(args)
