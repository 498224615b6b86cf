"""
PathNotify Reconciliation Engine.

Keeps watched paths, their backend handles and their cached snapshots
consistent, and publishes the resulting change/removed/close events.
Requires Python 3.11+.
"""

import asyncio
import os
from collections.abc import Callable, Coroutine, Iterable
from typing import Any

from notify.backends import WatchBackend, WatchdogBackend
from notify.errors import PathNotFoundError, StatFailure, WatchEstablishError
from notify.events import EventChannel, Listener
from notify.models import ResolvedChange, StatSnapshot, WatchEvent
from notify.registry import WatchHandle, WatchRegistry
from notify.resolver import ChangeResolver, StatFunc
from notify.stat_cache import StatCache, fetch_snapshot
from utils.config import WatcherSettings, get_settings
from utils.logger import LoggerMixin

PathInput = str | bytes | os.PathLike[str] | os.PathLike[bytes]


def _normalize(path: PathInput) -> str:
    return os.fsdecode(os.fspath(path))


class ReconciliationEngine(LoggerMixin):
    """
    Watches a set of paths and emits change events.

    All state is owned by the asyncio loop the engine is used from.
    Backend callbacks (delivered on watchdog's observer thread) are
    marshalled onto that loop before they touch any state.

    Events:
        change(path, snapshot): a net change was detected. For a
            watched file ``path`` is the watched path; for a watched
            directory it is the directory joined with the reported entry
            name, and ``snapshot`` describes the directory itself
        removed(path): a watch was torn down after a backend error, or
            could not be established within ``max_retries`` attempts
        close(): the engine was closed
    """

    def __init__(
        self,
        backend: WatchBackend | None = None,
        settings: WatcherSettings | None = None,
        stat_func: StatFunc = fetch_snapshot,
    ) -> None:
        """
        Initialize the engine.

        Args:
            backend: OS watch primitive; defaults to a watchdog backend
            settings: Watcher settings; defaults to the application settings
            stat_func: Coroutine returning a StatSnapshot for a path
        """
        self._settings = settings or get_settings().watcher
        self._backend = backend or WatchdogBackend(
            use_polling=self._settings.use_polling,
            polling_timeout=self._settings.polling_observer_timeout,
        )
        self._stat = stat_func

        self.events = EventChannel()
        self._stat_cache = StatCache()
        self._registry = WatchRegistry(self._backend, on_register=self._schedule_initial_stat)
        self._resolver = ChangeResolver(self._stat_cache, self._registry, stat_func)

        self._retries: dict[str, int] = {}
        self._retry_tasks: dict[str, asyncio.Task[None]] = {}
        self._tasks: set[asyncio.Task[Any]] = set()
        self._poll_task: asyncio.Task[None] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._closed = False
        self._epoch = 0

    # Subscription

    def on(self, event: WatchEvent | str, listener: Listener) -> Listener:
        """Subscribe to an engine event."""
        return self.events.on(event, listener)

    def off(self, event: WatchEvent | str, listener: Listener | None = None) -> None:
        """Unsubscribe from an engine event."""
        self.events.off(event, listener)

    # Public operations

    async def add(self, paths: PathInput | Iterable[PathInput]) -> "ReconciliationEngine":
        """
        Start watching one or more paths.

        Paths that do not exist are dropped without an error or event.
        Paths already being watched are left alone. Existence of the whole
        batch is checked before any of it is registered.

        Args:
            paths: A single path or an iterable of paths

        Returns:
            The engine, for chaining
        """
        self._loop = asyncio.get_running_loop()

        if isinstance(paths, (str, bytes, os.PathLike)):
            paths = [paths]
        candidates = list(dict.fromkeys(_normalize(p) for p in paths))

        if self._closed:
            self._closed = False
            self.log.info("engine_reopened")
        epoch = self._epoch

        existing = await self._filter_existing(candidates)
        if epoch != self._epoch:
            self.log.debug("add_abandoned_after_close", paths=len(existing))
            return self

        for path in existing:
            if path in self._registry:
                self.log.debug("already_watched", path=path)
                continue
            self._watch(path)

        self.log.info("paths_added", requested=len(candidates), watched=len(existing))
        self._start_polling()
        return self

    def close(self) -> "ReconciliationEngine":
        """
        Stop watching everything.

        Emits ``close`` once; further calls do nothing. Stats already in
        flight are not cancelled, their results are discarded.
        """
        if self._closed:
            return self

        self._closed = True
        self._epoch += 1

        count = self._registry.close_all()
        self._stat_cache.clear()
        self._retries.clear()

        for task in self._retry_tasks.values():
            task.cancel()
        self._retry_tasks.clear()

        if self._poll_task is not None:
            self._poll_task.cancel()
            self._poll_task = None

        self._backend.close()

        self.log.info("engine_closed", handles=count)
        self.events.emit(WatchEvent.CLOSE)
        return self

    async def verify(self, handle: WatchHandle | None = None) -> list[ResolvedChange]:
        """
        Manually compare cached snapshots against fresh stats.

        Args:
            handle: Restrict the sweep to this handle's path; otherwise
                every path with a cached snapshot is checked

        Returns:
            The changes that were emitted
        """
        if self._closed:
            return []

        if handle is not None:
            targets: list[tuple[str, WatchHandle | None]] = [(handle.path, handle)]
        else:
            targets = [(path, None) for path in self._stat_cache.paths()]

        results = await asyncio.gather(
            *(self._resolver.verify_path(path, h) for path, h in targets)
        )
        changes = [change for change in results if change is not None]

        if self._closed:
            return []
        for change in changes:
            self._emit_change(change)
        return changes

    def reset(self, path: PathInput) -> WatchHandle | None:
        """
        Re-create the watch for a path.

        Used when a handle stopped delivering events. The intermediate
        teardown does not emit ``removed``.

        Returns:
            The new handle, or None if it could not be established yet
        """
        if self._closed:
            return None

        self._loop = asyncio.get_running_loop()
        path = _normalize(path)
        self._teardown(path)
        self.log.info("watch_reset", path=path)
        return self._watch(path)

    # Backend callbacks

    def on_change(self, handle: WatchHandle, kind: str, filename: str | None) -> None:
        """Handle a raw notification; must run on the engine's loop."""
        if self._closed or not self._registry.is_current(handle):
            return
        self._spawn(self._relay_change(handle, kind, filename))

    def on_error(self, handle: WatchHandle, err: BaseException) -> None:
        """Tear down a path whose handle reported an error."""
        if self._closed or not self._registry.is_current(handle):
            self.log.debug("error_for_inactive_handle", path=handle.path, error=str(err))
            return

        self.log.warning("watch_invalidated", path=handle.path, error=str(err))
        self._teardown(handle.path)
        self.events.emit(WatchEvent.REMOVED, handle.path)

    def _deliver_change(self, handle: WatchHandle, kind: str, filename: str | None) -> None:
        self._call_on_loop(self.on_change, handle, kind, filename)

    def _deliver_error(self, handle: WatchHandle, err: BaseException) -> None:
        self._call_on_loop(self.on_error, handle, err)

    def _call_on_loop(self, callback: Callable[..., None], *args: Any) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(callback, *args)
        except RuntimeError:
            # Loop closed between the check and the call
            self.log.debug("callback_after_loop_closed", callback=callback.__name__)

    # Internals

    async def _relay_change(self, handle: WatchHandle, kind: str, filename: str | None) -> None:
        change = await self._resolver.resolve(handle, kind, filename)
        if change is not None and not self._closed:
            self._emit_change(change)

    def _emit_change(self, change: ResolvedChange) -> None:
        self.log.debug("change_detected", path=change.path, mtime_ns=change.snapshot.mtime_ns)
        self.events.emit(WatchEvent.CHANGE, change.path, change.snapshot)

    async def _filter_existing(self, paths: list[str]) -> list[str]:
        semaphore = asyncio.Semaphore(self._settings.existence_check_concurrency)

        async def exists(path: str) -> bool:
            async with semaphore:
                try:
                    await self._stat(path)
                except PathNotFoundError:
                    self.log.debug("path_not_found", path=path)
                    return False
                except StatFailure as e:
                    self.log.debug("path_not_accessible", path=path, error=str(e))
                    return False
                return True

        results = await asyncio.gather(*(exists(path) for path in paths))
        return [path for path, ok in zip(paths, results) if ok]

    def _watch(self, path: str) -> WatchHandle | None:
        try:
            handle = self._registry.register(path, self._deliver_change, self._deliver_error)
        except WatchEstablishError as e:
            self._schedule_retry(path, e)
            return None

        self._retries.pop(path, None)
        return handle

    def _schedule_initial_stat(self, handle: WatchHandle) -> None:
        self._spawn(self._resolver.capture_initial(handle))

    def _teardown(self, path: str) -> None:
        """Release the handle and cached state of a path."""
        self._registry.unregister(path)
        self._stat_cache.remove(path)
        self._retries.pop(path, None)

        retry_task = self._retry_tasks.pop(path, None)
        if retry_task is not None and retry_task is not asyncio.current_task():
            retry_task.cancel()

        if path in self._registry or path in self._stat_cache:
            raise RuntimeError(f"teardown left state behind for {path}")

    def _schedule_retry(self, path: str, err: WatchEstablishError) -> None:
        attempt = self._retries.get(path, 0) + 1
        if attempt > self._settings.max_retries:
            self._retries.pop(path, None)
            self.log.warning("watch_failed", path=path, attempts=attempt, error=str(err))
            self.events.emit(WatchEvent.REMOVED, path)
            return

        self._retries[path] = attempt
        delay = self._settings.retry_delay * (self._settings.retry_backoff ** (attempt - 1))
        self.log.info("watch_retry_scheduled", path=path, attempt=attempt, delay=delay)

        task = asyncio.get_running_loop().create_task(self._retry(path, delay))
        self._retry_tasks[path] = task
        task.add_done_callback(lambda t: self._forget_retry(path, t))

    def _forget_retry(self, path: str, task: asyncio.Task[None]) -> None:
        if self._retry_tasks.get(path) is task:
            del self._retry_tasks[path]

    async def _retry(self, path: str, delay: float) -> None:
        await asyncio.sleep(delay)
        self._forget_retry(path, asyncio.current_task())
        if self._closed or path in self._registry:
            return

        try:
            await self._stat(path)
        except (PathNotFoundError, StatFailure):
            if self._closed or path in self._registry:
                return
            self._retries.pop(path, None)
            self.log.info("retry_target_gone", path=path)
            self.events.emit(WatchEvent.REMOVED, path)
            return

        if not self._closed and path not in self._registry:
            self._watch(path)

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        loop = self._loop or asyncio.get_running_loop()
        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            self.log.error("engine_task_failed", error=str(task.exception()))

    def _start_polling(self) -> None:
        if self._settings.poll_interval_ms <= 0 or self._poll_task is not None or self._closed:
            return
        self._poll_task = asyncio.get_running_loop().create_task(self._poll_loop())

    async def _poll_loop(self) -> None:
        while not self._closed:
            await asyncio.sleep(self._settings.poll_interval)
            try:
                await self.verify()
            except Exception as e:
                self.log.error("verification_sweep_failed", error=str(e))

    async def wait_idle(self) -> None:
        """Wait until pending resolutions, initial stats and retries finish."""
        await asyncio.sleep(0)
        while self._tasks or self._retry_tasks:
            pending = [*self._tasks, *self._retry_tasks.values()]
            await asyncio.gather(*pending, return_exceptions=True)
            await asyncio.sleep(0)

    # Introspection

    @property
    def watched_paths(self) -> list[str]:
        """Paths with a live watch handle."""
        return self._registry.paths()

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def registry(self) -> WatchRegistry:
        return self._registry

    @property
    def stat_cache(self) -> StatCache:
        return self._stat_cache

    def snapshot(self, path: PathInput) -> StatSnapshot | None:
        """Last observed snapshot of a watched path."""
        return self._stat_cache.get(_normalize(path))

    def retry_count(self, path: PathInput) -> int:
        """Consecutive failed watch attempts for a path."""
        return self._retries.get(_normalize(path), 0)

    @classmethod
    async def watch_one(
        cls,
        path: PathInput,
        callback: Listener,
        **kwargs: Any,
    ) -> "ReconciliationEngine":
        """
        Watch a single path and subscribe a callback to its changes.

        Args:
            path: Path to watch
            callback: Receives ``(path, snapshot)`` for every change
            **kwargs: Passed to the engine constructor

        Returns:
            The running engine; close it when done
        """
        engine = cls(**kwargs)
        engine.on(WatchEvent.CHANGE, callback)
        await engine.add(path)
        return engine

    async def __aenter__(self) -> "ReconciliationEngine":
        """Async context manager entry."""
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Async context manager exit."""
        self.close()


async def watch_one(
    path: PathInput, callback: Listener, **kwargs: Any
) -> ReconciliationEngine:
    """Module-level shortcut for ``ReconciliationEngine.watch_one``."""
    return await ReconciliationEngine.watch_one(path, callback, **kwargs)
