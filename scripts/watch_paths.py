#!/usr/bin/env python3
"""
PathNotify Watch Script.

Watches files and directories and prints change events until interrupted.
Requires Python 3.11+.

Usage:
    python scripts/watch_paths.py /path/to/file /path/to/dir --poll-interval 2000
"""

import argparse
import asyncio
import sys
from datetime import datetime
from pathlib import Path

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent.parent / "backend"))

from notify.engine import ReconciliationEngine
from notify.models import StatSnapshot, WatchEvent
from utils.config import get_settings
from utils.logger import configure_logging, get_logger


configure_logging()
logger = get_logger("watch_paths")


def print_change(path: str, snapshot: StatSnapshot) -> None:
    """Print one change event."""
    stamp = datetime.fromtimestamp(snapshot.mtime).isoformat(timespec="seconds")
    kind = "dir " if snapshot.is_directory else "file"
    print(f"change   {kind} {path}  mtime={stamp} size={snapshot.size}")


def print_removed(path: str) -> None:
    """Print one removed event."""
    print(f"removed       {path}")


async def watch_paths(
    paths: list[Path],
    poll_interval_ms: int | None = None,
    use_polling: bool = False,
) -> int:
    """
    Watch paths until cancelled or until every watch is gone.

    Args:
        paths: Files and directories to watch
        poll_interval_ms: Periodic verification sweep interval
        use_polling: Use the polling observer

    Returns:
        Number of paths that were being watched at startup
    """
    settings = get_settings().watcher
    overrides: dict = {"use_polling": use_polling or settings.use_polling}
    if poll_interval_ms is not None:
        overrides["poll_interval_ms"] = poll_interval_ms
    watcher_settings = settings.model_copy(update=overrides)

    stopped = asyncio.Event()

    async with ReconciliationEngine(settings=watcher_settings) as engine:
        engine.on(WatchEvent.CHANGE, print_change)
        engine.on(WatchEvent.REMOVED, print_removed)
        engine.on(WatchEvent.CLOSE, stopped.set)

        await engine.add(paths)
        await engine.wait_idle()

        watched = len(engine.watched_paths)
        logger.info("watching", paths=engine.watched_paths)
        if watched == 0:
            return 0

        def check_empty(path: str) -> None:
            if not engine.watched_paths:
                stopped.set()

        engine.on(WatchEvent.REMOVED, check_empty)
        await stopped.wait()

    return watched


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Watch files and directories for changes",
    )
    parser.add_argument(
        "paths",
        type=Path,
        nargs="+",
        help="Files or directories to watch",
    )
    parser.add_argument(
        "--poll-interval",
        type=int,
        default=None,
        help="Run a verification sweep every N milliseconds (0 disables)",
    )
    parser.add_argument(
        "--polling",
        action="store_true",
        help="Use the stat-polling observer instead of native notifications",
    )

    args = parser.parse_args()

    try:
        watched = asyncio.run(watch_paths(
            args.paths,
            poll_interval_ms=args.poll_interval,
            use_polling=args.polling,
        ))
        if watched == 0:
            print("Error: none of the given paths exist")
            sys.exit(1)

    except KeyboardInterrupt:
        print("\nStopped")


if __name__ == "__main__":
    main()
