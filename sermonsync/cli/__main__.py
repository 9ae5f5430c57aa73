"""
sermonsync CLI - inspect the local sync state.

Usage:
    sermonsync status [--json]
    sermonsync queue list [--json]
    sermonsync queue sweep
    sermonsync queue cleanup
    sermonsync conflicts [--limit N] [--clear] [--json]
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from pydantic import ValidationError

from sermonsync.config import get_settings
from sermonsync.storage.sqlite import SQLiteStore
from sermonsync.summary.retry_queue import SummaryRetryQueue

from .commands.queue import cmd_queue
from .commands.status import cmd_conflicts, cmd_status

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sermonsync",
        description="Inspect offline sermon sync state",
    )
    parser.add_argument("--db", type=Path, default=None, help="Path to the local database")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True)

    # status
    p_status = subparsers.add_parser("status", help="Show sync and summary queue state")
    p_status.add_argument("--json", "-j", action="store_true")

    # queue
    p_queue = subparsers.add_parser("queue", help="Summary retry queue operations")
    queue_sub = p_queue.add_subparsers(dest="queue_action", required=True)
    q_list = queue_sub.add_parser("list", help="List pending summaries")
    q_list.add_argument("--json", "-j", action="store_true")
    queue_sub.add_parser("sweep", help="Queue summaries stuck in processing")
    queue_sub.add_parser("cleanup", help="Drop pending summaries older than the max age")

    # conflicts
    p_conflicts = subparsers.add_parser("conflicts", help="Show sync conflict history")
    p_conflicts.add_argument("--limit", "-n", type=int, default=20)
    p_conflicts.add_argument("--clear", action="store_true", help="Delete conflict history")
    p_conflicts.add_argument("--json", "-j", action="store_true")

    return parser


async def _run(args) -> None:
    settings = get_settings()
    store = SQLiteStore(args.db or settings.db_path)

    if args.command == "status":
        cmd_status(args, store)
    elif args.command == "conflicts":
        cmd_conflicts(args, store)
    elif args.command == "queue":
        queue = SummaryRetryQueue(store, None, settings=settings)
        try:
            cmd_queue(args, queue)
        finally:
            queue.close()


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)

    try:
        asyncio.run(_run(args))
    except ValidationError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)
    except (ValueError, TypeError) as e:
        logger.error(f"Input validation error: {e}")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Command failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
