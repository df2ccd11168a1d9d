import argparse
import asyncio
import atexit
import json
import logging
import sys
from pathlib import Path

from tqdm import tqdm

from .config import API_BASE_URL, DEFAULT_LIMIT, FEEDBACK_WINDOW_DAYS
from .data_access import DataAccess, RecommendationContext
from .database import (
    SqliteDataAccess,
    close_pool,
    feedback_summary,
    get_stats,
    init_db,
    record_feedback,
)
from .profile import UserProfile, build_profile
from .recommender import HybridRecommender, ScoredCandidate
from .remote import HttpDataAccess
from .utils import parse_date

logger = logging.getLogger(__name__)

# Register cleanup on exit
atexit.register(close_pool)


def _validate_user_id(value: str) -> int:
    """User and car ids are positive integers."""
    try:
        parsed = int(str(value).strip())
    except ValueError:
        raise ValueError(f"Invalid id: {value!r}")
    if parsed <= 0:
        raise ValueError(f"Invalid id: {value!r}")
    return parsed


def _build_context(args: argparse.Namespace) -> RecommendationContext:
    pickup = parse_date(getattr(args, 'pickup_date', None))
    ret = parse_date(getattr(args, 'return_date', None))
    if pickup and ret and ret < pickup:
        raise ValueError(f"Return date {ret} is before pickup date {pickup}")
    if bool(pickup) != bool(ret):
        logger.warning("Only one of --pickup-date/--return-date given; availability dates ignored")
    return RecommendationContext(pickup_date=pickup, return_date=ret, location=getattr(args, 'location', None))


def _make_data_access(source: str) -> DataAccess:
    if source == 'api':
        return HttpDataAccess(API_BASE_URL)
    return SqliteDataAccess()


async def _recommend_async(
    user_ids: list[int],
    context: RecommendationContext,
    source: str,
    limit: int,
    progress: bool = False,
) -> dict[int, list[ScoredCandidate]]:
    recommender = HybridRecommender()
    data_access = _make_data_access(source)
    results: dict[int, list[ScoredCandidate]] = {}

    async def _run(da: DataAccess):
        iterator = tqdm(user_ids, desc="Recommending", unit="user") if progress else user_ids
        for user_id in iterator:
            results[user_id] = await recommender.recommend(user_id, context, da, limit=limit)

    if isinstance(data_access, HttpDataAccess):
        async with data_access as da:
            await _run(da)
    else:
        await _run(data_access)
    return results


async def _profile_async(user_id: int, source: str) -> UserProfile:
    data_access = _make_data_access(source)

    async def _load(da: DataAccess) -> UserProfile:
        aggregates, searches = await asyncio.gather(
            da.get_user_aggregates(user_id),
            da.get_user_recent_searches(user_id),
        )
        return build_profile(aggregates, searches)

    if isinstance(data_access, HttpDataAccess):
        async with data_access as da:
            return await _load(da)
    return await _load(data_access)


def _output_recommendations(recs: list[ScoredCandidate], user_id: int, fmt: str) -> None:
    if fmt == 'json':
        print(json.dumps({
            'user_id': user_id,
            'count': len(recs),
            'recommendations': [r.to_dict() for r in recs],
        }, indent=2, default=str))
        return

    if not recs:
        logger.info(f"No recommendations for user {user_id} right now")
        return

    logger.info(f"\nTop {len(recs)} cars for user {user_id}:\n")
    for i, rec in enumerate(recs, 1):
        car = rec.car
        price = f"KES {car.price_per_hour:.0f}/h" if car.price_per_hour is not None else "price n/a"
        logger.info(f"{i:2}. {car.title} ({car.category or 'uncategorized'}, {car.location or '?'}) - {price}")
        logger.info(f"    score {rec.score:.3f} [{rec.source}] - {rec.reason}")


def cmd_init_db(args: argparse.Namespace) -> None:
    """Create the schema."""
    init_db()
    logger.info("Database initialized")


def cmd_recommend(args: argparse.Namespace) -> None:
    """Generate recommendations for one user."""
    user_id = _validate_user_id(args.user_id)
    context = _build_context(args)

    results = asyncio.run(_recommend_async([user_id], context, args.source, args.limit))
    _output_recommendations(results.get(user_id, []), user_id, args.format)


def cmd_batch_recommend(args: argparse.Namespace) -> None:
    """Generate recommendations for many users and write them as JSON."""
    user_ids = [_validate_user_id(u) for u in args.user_ids]
    context = _build_context(args)

    results = asyncio.run(_recommend_async(user_ids, context, args.source, args.limit, progress=True))
    payload = {
        str(user_id): [r.to_dict() for r in recs]
        for user_id, recs in results.items()
    }
    text = json.dumps(payload, indent=2, default=str)

    if args.output:
        Path(args.output).write_text(text)
        empty = sum(1 for recs in results.values() if not recs)
        logger.info(f"Wrote recommendations for {len(results)} users to {args.output} ({empty} empty)")
    else:
        print(text)


def cmd_profile(args: argparse.Namespace) -> None:
    """Show a user's aggregated preference profile."""
    user_id = _validate_user_id(args.user_id)
    profile = asyncio.run(_profile_async(user_id, getattr(args, 'source', 'sqlite')))

    logger.info(f"\nProfile for user {user_id}")
    logger.info(f"  Bookings: {profile.total_bookings}")
    if profile.avg_spending is not None:
        logger.info(f"  Average spend: KES {profile.avg_spending:.0f}")
    if profile.avg_duration is not None:
        logger.info(f"  Average trip: {profile.avg_duration:.1f} days")
    if profile.given_rating is not None:
        logger.info(f"  Average rating given: {profile.given_rating:.2f}")

    if profile.preferences.categories:
        logger.info("\nPreferred categories:")
        for cat, count in sorted(profile.preferences.categories.items(), key=lambda x: -x[1]):
            logger.info(f"  {cat}: {count}")

    if profile.preferences.locations:
        logger.info("\nPreferred locations:")
        for loc, count in sorted(profile.preferences.locations.items(), key=lambda x: -x[1]):
            logger.info(f"  {loc}: {count}")


def cmd_feedback(args: argparse.Namespace) -> None:
    """Record feedback on a recommended car."""
    user_id = _validate_user_id(args.user_id)
    car_id = _validate_user_id(args.car_id)
    row_id = record_feedback(user_id, car_id, args.value)
    logger.info(f"Recorded feedback #{row_id}: user {user_id} -> car {car_id} ({args.value:+g})")


def cmd_analytics(args: argparse.Namespace) -> None:
    """Summarize recent recommendation feedback."""
    summary = feedback_summary(days=args.days)

    logger.info(f"\nFeedback over the last {summary['window_days']} days:")
    logger.info(f"  Total: {summary['total_feedback']}")
    logger.info(f"  Unique users: {summary['unique_users']}")
    if summary['avg_feedback'] is not None:
        logger.info(f"  Average feedback: {summary['avg_feedback']:+.2f}")

    if summary['top_cars']:
        logger.info("\nMost recommended cars:")
        for row in summary['top_cars']:
            name = " ".join(p for p in (row['make'], row['model']) if p) or f"Car {row['id']}"
            logger.info(f"  {name}: {row['feedback_count']}")


def cmd_stats(args: argparse.Namespace) -> None:
    """Show database statistics."""
    stats = get_stats()
    logger.info("\nDatabase Statistics:")
    for table, count in stats.items():
        logger.info(f"  {table}: {count}")


def _add_context_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--location", help="Requested pickup location")
    parser.add_argument("--pickup-date", help="Pickup date (YYYY-MM-DD)")
    parser.add_argument("--return-date", help="Return date (YYYY-MM-DD)")
    parser.add_argument("--limit", type=int, default=DEFAULT_LIMIT, help="Number of recommendations")
    parser.add_argument("--source", choices=['sqlite', 'api'], default='sqlite',
                        help="Where to read users, cars and bookings from")


def main():
    parser = argparse.ArgumentParser(description="DriveKenya car recommendations")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init-db", help="Create database tables")
    init_parser.set_defaults(func=cmd_init_db)

    rec_parser = subparsers.add_parser("recommend", help="Recommend cars for a user")
    rec_parser.add_argument("user_id", help="User id")
    _add_context_args(rec_parser)
    rec_parser.add_argument("--format", choices=['text', 'json'], default='text', help="Output format")
    rec_parser.set_defaults(func=cmd_recommend)

    batch_parser = subparsers.add_parser("batch-recommend", help="Recommend cars for many users")
    batch_parser.add_argument("user_ids", nargs="+", help="User ids")
    _add_context_args(batch_parser)
    batch_parser.add_argument("--output", "-o", help="Write JSON here instead of stdout")
    batch_parser.set_defaults(func=cmd_batch_recommend)

    profile_parser = subparsers.add_parser("profile", help="Show a user's preference profile")
    profile_parser.add_argument("user_id", help="User id")
    profile_parser.add_argument("--source", choices=['sqlite', 'api'], default='sqlite',
                                help="Where to read the user's history from")
    profile_parser.set_defaults(func=cmd_profile)

    feedback_parser = subparsers.add_parser("feedback", help="Record feedback on a recommendation")
    feedback_parser.add_argument("user_id", help="User id")
    feedback_parser.add_argument("car_id", help="Car id")
    feedback_parser.add_argument("value", type=float, help="Feedback value (e.g. 1 liked, -1 dismissed)")
    feedback_parser.set_defaults(func=cmd_feedback)

    analytics_parser = subparsers.add_parser("analytics", help="Summarize recommendation feedback")
    analytics_parser.add_argument("--days", type=int, default=FEEDBACK_WINDOW_DAYS, help="Window in days")
    analytics_parser.set_defaults(func=cmd_analytics)

    stats_parser = subparsers.add_parser("stats", help="Show database statistics")
    stats_parser.set_defaults(func=cmd_stats)

    args = parser.parse_args()

    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        args.func(args)
    except ValueError as e:
        logger.error(str(e))
        sys.exit(2)


if __name__ == "__main__":
    main()
