"""
PathNotify Change Resolver.

Turns raw backend notifications into logical changes.
Requires Python 3.11+.
"""

import os
from collections.abc import Awaitable, Callable

from notify.errors import PathNotFoundError, StatFailure
from notify.models import ResolvedChange, StatSnapshot
from notify.registry import WatchHandle, WatchRegistry
from notify.stat_cache import StatCache, fetch_snapshot
from utils.logger import LoggerMixin

StatFunc = Callable[[str], Awaitable[StatSnapshot]]


class ChangeResolver(LoggerMixin):
    """
    Decides what changed for a raw notification.

    A notification carrying a filename is trusted: the watched path is
    re-stated and a change is always produced. A notification without a
    filename falls back to a verification of the watched path that only
    reports a change when its modification time moved.

    Stat results for handles that were closed or replaced while the stat
    was in flight are discarded, as are results older than one already
    applied for the same path.
    """

    def __init__(
        self,
        stat_cache: StatCache,
        registry: WatchRegistry,
        stat_func: StatFunc = fetch_snapshot,
    ) -> None:
        self._stat_cache = stat_cache
        self._registry = registry
        self._stat = stat_func

    async def _fresh_snapshot(self, path: str) -> StatSnapshot | None:
        try:
            return await self._stat(path)
        except (PathNotFoundError, StatFailure) as e:
            self.log.debug("stat_failed", path=path, error=str(e))
            return None

    async def capture_initial(self, handle: WatchHandle) -> StatSnapshot | None:
        """Record the first snapshot for a newly registered handle."""
        ticket = self._stat_cache.issue(handle.path)
        snapshot = await self._fresh_snapshot(handle.path)
        if snapshot is None or not self._registry.is_current(handle):
            return None
        if not self._stat_cache.record(handle.path, snapshot, ticket):
            return None
        return snapshot

    async def resolve(
        self, handle: WatchHandle, kind: str, filename: str | None
    ) -> ResolvedChange | None:
        """
        Resolve one raw notification.

        Args:
            handle: Handle the notification arrived on
            kind: Raw event kind ("change" or "rename")
            filename: Entry the backend reported, if it could tell

        Returns:
            The logical change, or None if nothing should be emitted
        """
        if not filename:
            return await self.verify_path(handle.path, handle)

        ticket = self._stat_cache.issue(handle.path)
        snapshot = await self._fresh_snapshot(handle.path)
        if snapshot is None:
            return None

        if not self._registry.is_current(handle):
            self.log.debug("stale_handle_result", path=handle.path, kind=kind)
            return None

        if not self._stat_cache.record(handle.path, snapshot, ticket):
            self.log.debug("out_of_order_stat", path=handle.path, ticket=ticket)
            return None

        # A change reported on a directory is about an entry inside it
        if snapshot.is_directory:
            return ResolvedChange(path=os.path.join(handle.path, filename), snapshot=snapshot)
        return ResolvedChange(path=handle.path, snapshot=snapshot)

    async def verify_path(
        self, path: str, handle: WatchHandle | None = None
    ) -> ResolvedChange | None:
        """
        Re-stat a watched path and compare it with the cached snapshot.

        The cache is refreshed whether or not the modification time moved.

        Args:
            path: Watched path with a cached snapshot
            handle: When given, the result is dropped unless this handle
                is still the live one for the path

        Returns:
            A change if the modification time differs, else None
        """
        if path not in self._stat_cache:
            return None

        # Pin the handle the result must still belong to once the stat returns
        if handle is None:
            handle = self._registry.lookup(path)
            if handle is None:
                return None

        ticket = self._stat_cache.issue(path)
        snapshot = await self._fresh_snapshot(path)
        if snapshot is None:
            return None

        previous = self._stat_cache.get(path)
        if not self._registry.is_current(handle) or previous is None:
            self.log.debug("stale_handle_result", path=path)
            return None

        if not self._stat_cache.record(path, snapshot, ticket):
            return None

        if previous.same_mtime(snapshot):
            return None
        return ResolvedChange(path=path, snapshot=snapshot)
