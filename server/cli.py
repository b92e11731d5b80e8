#!/usr/bin/env python3
"""
Command line entry point.

Usage:
    python cli.py migrate
    python cli.py run --max 20 --dry-run
"""

import argparse
import asyncio
import json
import sys
import time

from core.config import Settings
from core.container import container
from core.logging import configure_logging, get_logger, log_execution_time
from services.errors import PaperAlertsError

logger = get_logger(__name__)


async def migrate() -> int:
    start_time = time.time()
    database = container.database()
    await database.startup()
    await database.shutdown()
    logger.info("Database schema up to date", dialect=database.dialect_name)
    log_execution_time(logger, "migrate", start_time, time.time())
    return 0


async def run_batch(max_subscriptions, dry_run: bool) -> int:
    database = container.database()
    await database.startup()
    await container.notifier().startup()
    try:
        result = await container.subscription_worker().process_subscriptions(
            max_subscriptions=max_subscriptions, dry_run=dry_run
        )
    except PaperAlertsError as e:
        logger.error("Subscription batch failed", error=str(e))
        print(json.dumps({"success": False, "error": str(e)}))
        return 1
    finally:
        await container.notifier().shutdown()
        await container.arxiv_client().close()
        await container.result_cache().close()
        await database.shutdown()

    print(json.dumps({"success": True, **result.to_dict()}, indent=2))
    return 0 if result.failed == 0 else 2


def positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {number}")
    return number


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Paper alerts maintenance and batch runner")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("migrate", help="Create database tables")

    run_parser = subparsers.add_parser("run", help="Process due subscriptions once")
    run_parser.add_argument("--max", dest="max_subscriptions", type=positive_int, default=None,
                            help="Maximum subscriptions to process")
    run_parser.add_argument("--dry-run", action="store_true",
                            help="Fetch and filter only, without sending or recording")

    args = parser.parse_args(argv)
    configure_logging(Settings())

    if args.command == "migrate":
        return asyncio.run(migrate())
    return asyncio.run(run_batch(args.max_subscriptions, args.dry_run))


if __name__ == "__main__":
    sys.exit(main())
