"""
PathNotify Stat Cache.

Last observed snapshot per watched path, plus per-path ordering of
stat requests so an older result never overwrites a newer one.
Requires Python 3.11+.
"""

import asyncio
import os
from collections.abc import Iterator

from notify.errors import PathNotFoundError, StatFailure
from notify.models import StatSnapshot


async def fetch_snapshot(path: str) -> StatSnapshot:
    """
    Stat a path without blocking the event loop.

    Raises:
        PathNotFoundError: The path does not exist
        StatFailure: Any other stat error
    """
    try:
        result = await asyncio.to_thread(os.stat, path)
    except FileNotFoundError as e:
        raise PathNotFoundError(path, str(e)) from e
    except OSError as e:
        raise StatFailure(path, str(e)) from e
    return StatSnapshot.from_stat_result(result)


class StatCache:
    """
    In-memory snapshot storage keyed by watched path.

    Callers take a ticket with ``issue`` before starting a stat and hand
    it back to ``record``; a result is applied only if no result from a
    later-issued ticket has been applied already. Tickets come from one
    counter that is never reset, so a stat started before a path was
    forgotten always ranks below any stat started after it.
    """

    def __init__(self) -> None:
        self._snapshots: dict[str, StatSnapshot] = {}
        self._counter = 0
        self._applied: dict[str, int] = {}

    def issue(self, path: str) -> int:
        """Reserve the next stat ticket for a path."""
        self._counter += 1
        return self._counter

    def record(self, path: str, snapshot: StatSnapshot, ticket: int | None = None) -> bool:
        """
        Store a snapshot for a path.

        Args:
            path: Watched path
            snapshot: Freshly observed metadata
            ticket: Ticket from ``issue``; None writes unconditionally

        Returns:
            False if the write was stale and discarded
        """
        if ticket is not None:
            if ticket <= self._applied.get(path, 0):
                return False
            self._applied[path] = ticket
        self._snapshots[path] = snapshot
        return True

    def get(self, path: str) -> StatSnapshot | None:
        """Get the last observed snapshot, or None if not yet observed."""
        return self._snapshots.get(path)

    def remove(self, path: str) -> None:
        """Forget a path entirely."""
        self._snapshots.pop(path, None)
        self._applied.pop(path, None)

    def clear(self) -> None:
        """Forget every path; the ticket counter keeps running."""
        self._snapshots.clear()
        self._applied.clear()

    def paths(self) -> list[str]:
        """Paths that currently have a snapshot."""
        return list(self._snapshots)

    def __contains__(self, path: object) -> bool:
        return path in self._snapshots

    def __len__(self) -> int:
        return len(self._snapshots)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._snapshots))
