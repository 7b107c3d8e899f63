import argparse
import json
import logging
import atexit

from .database import (
    init_db, save_items, save_interactions, load_user_ids, get_stats,
    close_pool, run_maintenance,
)
from .config import (
    ALGORITHMS,
    DEFAULT_ALGORITHM,
    DEFAULT_CONTEXT,
    DEFAULT_TOP_N,
)
from .cache import RecommendationCache, SqliteCacheStore
from .engine import RecommendationEngine
from .errors import InvalidConfigurationError
from .preferences import RecommendationPreferences
from .recommender import Recommendation
from .sources import SqliteCatalogSource, SqliteInteractionSource
from tqdm import tqdm

logger = logging.getLogger(__name__)

# Register cleanup on exit
atexit.register(close_pool)


def _validate_id(value: str, kind: str = "user") -> str:
    """
    Normalize a user or item identifier from the command line.
    Raises ValueError for blank identifiers.
    """
    cleaned = value.strip()
    if not cleaned:
        raise ValueError(f"Invalid {kind} id: '{value}'")
    return cleaned


def _build_engine() -> RecommendationEngine:
    init_db()
    return RecommendationEngine(
        interactions=SqliteInteractionSource(),
        catalog=SqliteCatalogSource(),
        cache=RecommendationCache(SqliteCacheStore()),
    )


def _output_recommendations(
    recs: list[Recommendation],
    args: argparse.Namespace,
    user_id: str,
) -> None:
    """Format and log recommendations in the requested format."""
    recs = recs or []
    output_format = getattr(args, 'format', 'text')

    if output_format == 'json':
        output = [
            {
                "item_id": r.item_id,
                "score": round(r.score, 4),
                "reason": r.reason,
                "strategy": r.strategy,
            }
            for r in recs
        ]
        logger.info(json.dumps(output, indent=2))
        return

    if not recs:
        logger.info(f"\nNo recommendations for {user_id}.")
        return

    logger.info(f"\nTop {len(recs)} recommendations for {user_id} ({args.algorithm}):")
    for i, r in enumerate(recs, 1):
        logger.info(f"{i}. {r.item_id} - Score: {r.score:.3f}")
        logger.info(f"   Why: {r.reason}")


def cmd_init_db(args: argparse.Namespace) -> None:
    """Create the SQLite schema."""
    init_db()
    logger.info("Database initialized")


def cmd_import(args: argparse.Namespace) -> None:
    """Import catalog items and interactions from a JSON file."""
    with open(args.file, 'r') as f:
        data = json.load(f)

    init_db()

    if 'items' in data:
        count = save_items(data['items'])
        logger.info(f"Imported {count} items")

    if 'interactions' in data:
        count = save_interactions(data['interactions'])
        logger.info(f"Imported {count} interactions")

    if getattr(args, "maintenance", False):
        run_maintenance(vacuum=True, analyze=True)

    logger.info(f"Import completed from {args.file}")


def _build_preferences(args: argparse.Namespace) -> RecommendationPreferences | None:
    """Preferences from the recommend filters, None when no filter was given."""
    excluded = getattr(args, 'exclude_categories', None) or []
    min_price = getattr(args, 'min_price', None)
    max_price = getattr(args, 'max_price', None)
    if not excluded and min_price is None and max_price is None:
        return None
    return RecommendationPreferences(
        excluded_categories=frozenset(excluded),
        min_price=min_price,
        max_price=max_price,
    )


def cmd_recommend(args: argparse.Namespace) -> None:
    """Generate recommendations for one user."""
    user_id = _validate_id(args.user_id)

    with _build_engine() as engine:
        try:
            preferences = _build_preferences(args)
            recs = engine.get_recommendations(
                user_id,
                top_n=args.limit,
                algorithm=args.algorithm,
                context=args.context,
                use_cache=not args.no_cache,
                preferences=preferences,
            )
        except InvalidConfigurationError as e:
            logger.error(f"Invalid request: {e.message}")
            return

    _output_recommendations(recs, args, user_id)


def cmd_similar_items(args: argparse.Namespace) -> None:
    """Find items frequently bought by the same customers."""
    item_id = _validate_id(args.item_id, kind="item")

    with _build_engine() as engine:
        recs = engine.similar_items(item_id, top_n=args.limit)

    if not recs:
        logger.error(f"No co-purchase data for item '{item_id}'")
        return

    logger.info(f"\nItems similar to {item_id}:")
    for i, r in enumerate(recs, 1):
        logger.info(f"{i}. {r.item_id} - Similarity: {r.score:.3f}")


def cmd_similar_users(args: argparse.Namespace) -> None:
    """Find users whose purchase patterns correlate with the given user."""
    user_id = _validate_id(args.user_id)

    with _build_engine() as engine:
        neighbors = engine.similar_users(user_id, k=args.limit)

    if not neighbors:
        logger.info(f"\nNo positively correlated users found for {user_id}.")
        return

    logger.info(f"\nUsers similar to {user_id}:")
    logger.info("-" * 50)
    for neighbor in neighbors:
        logger.info(f"  {neighbor.entity_id_2}: {neighbor.score:.2f} correlation")


def cmd_warm_cache(args: argparse.Namespace) -> None:
    """Precompute and cache recommendations for many users."""
    init_db()
    user_ids = [_validate_id(u) for u in args.users] if args.users else load_user_ids()
    if not user_ids:
        logger.info("No users to warm")
        return

    warmed = 0
    empty = 0
    with _build_engine() as engine:
        engine.refresh()
        for user_id in tqdm(user_ids, desc="Users"):
            recs = engine.get_recommendations(
                user_id,
                top_n=args.limit,
                algorithm=args.algorithm,
                context=args.context,
                use_cache=False,
            )
            if recs:
                warmed += 1
            else:
                empty += 1

    logger.info(f"Warmed cache for {warmed} users ({empty} with no recommendations)")


def cmd_cache_purge(args: argparse.Namespace) -> None:
    """Delete expired cached recommendation sets."""
    init_db()
    cache = RecommendationCache(SqliteCacheStore())
    removed = cache.purge_expired()
    logger.info(f"Removed {removed} expired recommendation sets")

    if getattr(args, "maintenance", False):
        run_maintenance(vacuum=True, analyze=True)


def cmd_stats(args: argparse.Namespace) -> None:
    """Show database statistics."""
    init_db()
    stats = get_stats()

    logger.info(f"\nDatabase Statistics:")
    logger.info(f"  Users: {stats['users']}")
    logger.info(f"  Items: {stats['items']}")
    logger.info(f"  Total interactions: {stats['interactions']}")
    logger.info(f"  Cached recommendation sets: {stats['cached_sets']}")


def main():
    parser = argparse.ArgumentParser(description="Product Recommender")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # Init-db command
    init_parser = subparsers.add_parser("init-db", help="Create database tables")
    init_parser.set_defaults(func=cmd_init_db)

    # Import command
    import_parser = subparsers.add_parser("import", help="Import items and interactions from JSON")
    import_parser.add_argument("file", help="JSON file with 'items' and/or 'interactions' lists")
    import_parser.add_argument("--maintenance", action="store_true", default=False,
                               help="Run VACUUM/ANALYZE after import")
    import_parser.set_defaults(func=cmd_import)

    # Recommend command
    rec_parser = subparsers.add_parser("recommend", help="Generate recommendations")
    rec_parser.add_argument("user_id", help="User id")
    rec_parser.add_argument("--algorithm", choices=list(ALGORITHMS), default=DEFAULT_ALGORITHM,
                            help="Recommendation algorithm")
    rec_parser.add_argument("--limit", type=int, default=DEFAULT_TOP_N, help="Number of recommendations")
    rec_parser.add_argument("--context", default=DEFAULT_CONTEXT, help="Cache context key")
    rec_parser.add_argument("--no-cache", action="store_true", help="Skip the cache lookup")
    rec_parser.add_argument("--format", choices=['text', 'json'], default='text', help="Output format")
    rec_parser.add_argument("--exclude-categories", nargs="+", metavar="CATEGORY",
                            help="Never recommend items in these categories")
    rec_parser.add_argument("--min-price", type=float, help="Lowest item price to recommend")
    rec_parser.add_argument("--max-price", type=float, help="Highest item price to recommend")
    rec_parser.set_defaults(func=cmd_recommend)

    # Similar items command
    similar_items_parser = subparsers.add_parser("similar-items", help="Find items bought together")
    similar_items_parser.add_argument("item_id", help="Item id")
    similar_items_parser.add_argument("--limit", type=int, default=DEFAULT_TOP_N, help="Number of items to show")
    similar_items_parser.set_defaults(func=cmd_similar_items)

    # Similar users command
    similar_users_parser = subparsers.add_parser("similar-users", help="Find users with similar purchases")
    similar_users_parser.add_argument("user_id", help="User id")
    similar_users_parser.add_argument("--limit", type=int, default=DEFAULT_TOP_N, help="Number of users to show")
    similar_users_parser.set_defaults(func=cmd_similar_users)

    # Warm-cache command
    warm_parser = subparsers.add_parser("warm-cache", help="Precompute recommendations into the cache")
    warm_parser.add_argument("--users", nargs="+", help="User ids (default: every user with interactions)")
    warm_parser.add_argument("--algorithm", choices=list(ALGORITHMS), default=DEFAULT_ALGORITHM,
                             help="Recommendation algorithm")
    warm_parser.add_argument("--limit", type=int, default=DEFAULT_TOP_N, help="Recommendations per user")
    warm_parser.add_argument("--context", default=DEFAULT_CONTEXT, help="Cache context key")
    warm_parser.set_defaults(func=cmd_warm_cache)

    # Cache-purge command
    purge_parser = subparsers.add_parser("cache-purge", help="Delete expired cached recommendations")
    purge_parser.add_argument("--maintenance", action="store_true", default=False,
                              help="Run VACUUM/ANALYZE after purge")
    purge_parser.set_defaults(func=cmd_cache_purge)

    # Stats command
    stats_parser = subparsers.add_parser("stats", help="Show database statistics")
    stats_parser.set_defaults(func=cmd_stats)

    args = parser.parse_args()

    # Configure logging based on verbosity
    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    args.func(args)


if __name__ == "__main__":
    main()
