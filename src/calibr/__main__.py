"""Command-line entry point: ``python -m calibr``.

Subcommands cover operational chores; forecast writes go through the
service layer from application code.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

from pydantic import ValidationError as SettingsValidationError

from calibr.config import Settings, get_settings
from calibr.errors import CalibrError
from calibr.reputation.tiers import Tier
from calibr.service import LeaderboardService
from calibr.storage.cache import LeaderboardCache, create_redis
from calibr.storage.database import DatabaseManager

logger = logging.getLogger(__name__)


async def _init_db(settings: Settings) -> None:
    db = DatabaseManager.from_settings(settings.database)
    try:
        await db.init_schema_async()
    finally:
        await db.dispose_async()


async def _leaderboard(settings: Settings, args: argparse.Namespace) -> dict[str, object]:
    db = DatabaseManager.from_settings(settings.database)
    redis = create_redis(settings.redis.url)
    cache = LeaderboardCache(redis, ttl_seconds=settings.leaderboard.cache_ttl_seconds)
    try:
        async with db.get_async_session() as session:
            service = LeaderboardService(session, cache=cache, settings=settings)
            return await service.leaderboard(
                {
                    "tier": args.tier,
                    "limit": args.limit,
                    "offset": args.offset,
                    "minForecasts": args.min_forecasts,
                }
            )
    finally:
        if redis is not None:
            await redis.aclose()
        await db.dispose_async()


async def _refresh_ranks(settings: Settings) -> int:
    db = DatabaseManager.from_settings(settings.database)
    redis = create_redis(settings.redis.url)
    try:
        async with db.get_async_session() as session:
            service = LeaderboardService(
                session, cache=LeaderboardCache(redis), settings=settings
            )
            return await service.refresh_ranks()
    finally:
        if redis is not None:
            await redis.aclose()
        await db.dispose_async()


def cmd_init_db(settings: Settings, args: argparse.Namespace) -> int:
    """Create all tables (development; use Alembic in production)."""
    asyncio.run(_init_db(settings))
    print("Database schema initialized")
    return 0


def cmd_config(settings: Settings, args: argparse.Namespace) -> int:
    """Print the effective configuration with secrets redacted."""
    print(json.dumps(settings.redacted_summary(), indent=2))
    return 0


def cmd_leaderboard(settings: Settings, args: argparse.Namespace) -> int:
    page = asyncio.run(_leaderboard(settings, args))
    print(json.dumps(page, indent=2))
    return 0


def cmd_refresh_ranks(settings: Settings, args: argparse.Namespace) -> int:
    count = asyncio.run(_refresh_ranks(settings))
    print(f"Ranked {count} forecaster(s)")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="calibr",
        description="Calibr forecasting ledger and reputation service",
    )
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    init_parser = subparsers.add_parser("init-db", help="Create database tables")
    init_parser.set_defaults(func=cmd_init_db)

    config_parser = subparsers.add_parser("config", help="Show effective configuration")
    config_parser.set_defaults(func=cmd_config)

    board_parser = subparsers.add_parser("leaderboard", help="Print a leaderboard page")
    board_parser.add_argument("--tier", choices=[t.value for t in Tier], help="Filter by tier")
    board_parser.add_argument("--limit", type=int, help="Entries per page")
    board_parser.add_argument("--offset", type=int, default=0, help="Entries to skip")
    board_parser.add_argument(
        "--min-forecasts", type=int, default=0, help="Minimum resolved forecasts"
    )
    board_parser.set_defaults(func=cmd_leaderboard)

    ranks_parser = subparsers.add_parser("refresh-ranks", help="Store current global ranks")
    ranks_parser.set_defaults(func=cmd_refresh_ranks)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    try:
        settings = get_settings()
    except SettingsValidationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    logging.basicConfig(
        level=settings.get_logging_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        return int(args.func(settings, args))
    except CalibrError as e:
        logger.error("%s failed: %s", args.command, e.message)
        print(f"Error: {e.message}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
