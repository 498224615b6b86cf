"""
PathNotify Watch Backends.

Adapts watchdog observers to the raw watch primitive the registry
consumes: start watching a path, deliver change/error callbacks, stop.
Requires Python 3.11+.
"""

import os
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.api import BaseObserver, ObservedWatch
from watchdog.observers.polling import PollingObserver

from notify.errors import HandleInvalidatedError, WatchEstablishError
from notify.models import RawEventKind
from utils.logger import LoggerMixin

RawChangeCallback = Callable[[str, str | None], None]
RawErrorCallback = Callable[[BaseException], None]

# watchdog event types that mean the entry itself was touched
_CHANGE_TYPES = frozenset({"modified", "closed"})
_RENAME_TYPES = frozenset({"created", "deleted", "moved"})


class WatchBackend(Protocol):
    """The OS-level watch primitive."""

    def watch(
        self, path: str, on_change: RawChangeCallback, on_error: RawErrorCallback
    ) -> Any:
        """Start watching a path and return an opaque token."""
        ...

    def unwatch(self, token: Any) -> None:
        """Stop watching; unknown or already released tokens are ignored."""
        ...

    def close(self) -> None:
        """Release every OS resource held by the backend."""
        ...


def _decode(path: str | bytes) -> str:
    if isinstance(path, bytes):
        path = os.fsdecode(path)
    return os.path.abspath(path) if path else path


@dataclass(eq=False)
class Subscription:
    """One watched path, dispatched from the directory watch containing it."""

    path: str
    target: str
    directory: str
    is_directory: bool
    on_change: RawChangeCallback
    on_error: RawErrorCallback
    active: bool = True


class _DirectoryDispatcher(FileSystemEventHandler, LoggerMixin):
    """
    Fans out events of one observed directory to its subscriptions.

    watchdog keys scheduled watches by directory, so watching a directory
    and a file inside it share one ObservedWatch. Each subscription turns
    the events that concern it into ``(kind, filename)`` notifications.
    """

    def __init__(self, directory: str) -> None:
        super().__init__()
        self.directory = directory
        self.watch: ObservedWatch | None = None
        self._subscriptions: list[Subscription] = []
        self._lock = threading.Lock()

    def add(self, subscription: Subscription) -> None:
        with self._lock:
            self._subscriptions.append(subscription)

    def discard(self, subscription: Subscription) -> bool:
        """Remove a subscription; returns True once the dispatcher is empty."""
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)
            return not self._subscriptions

    def dispatch(self, event: FileSystemEvent) -> None:
        with self._lock:
            subscriptions = [s for s in self._subscriptions if s.active]

        for subscription in subscriptions:
            try:
                if subscription.is_directory:
                    self._dispatch_directory(subscription, event)
                else:
                    self._dispatch_file(subscription, event)
            except Exception as e:
                self.log.error(
                    "raw_event_dispatch_failed",
                    path=subscription.path,
                    event_type=event.event_type,
                    error=str(e),
                )

    def _dispatch_directory(self, subscription: Subscription, event: FileSystemEvent) -> None:
        src_path = _decode(event.src_path)

        if src_path == subscription.target:
            if event.event_type in ("deleted", "moved"):
                subscription.on_error(
                    HandleInvalidatedError(subscription.path, "watched directory went away")
                )
            elif event.event_type == "modified":
                # The directory itself changed; the backend cannot say which entry
                subscription.on_change(RawEventKind.CHANGE.value, None)
            return

        if os.path.dirname(src_path) != subscription.target:
            return

        filename = os.path.basename(src_path)
        if event.event_type in _CHANGE_TYPES:
            subscription.on_change(RawEventKind.CHANGE.value, filename)
        elif event.event_type in _RENAME_TYPES:
            subscription.on_change(RawEventKind.RENAME.value, filename)
            dest_path = _decode(getattr(event, "dest_path", "") or "")
            if dest_path and os.path.dirname(dest_path) == subscription.target:
                subscription.on_change(RawEventKind.RENAME.value, os.path.basename(dest_path))

    def _dispatch_file(self, subscription: Subscription, event: FileSystemEvent) -> None:
        src_path = _decode(event.src_path)
        dest_path = _decode(getattr(event, "dest_path", "") or "")
        filename = os.path.basename(subscription.target)

        if src_path == subscription.target:
            if event.event_type in _CHANGE_TYPES:
                subscription.on_change(RawEventKind.CHANGE.value, filename)
            elif event.event_type in ("deleted", "moved"):
                subscription.on_error(
                    HandleInvalidatedError(subscription.path, "watched file went away")
                )
            elif event.event_type == "created":
                subscription.on_change(RawEventKind.RENAME.value, filename)
        elif dest_path == subscription.target:
            # Atomic save: another file was renamed over the watched one
            subscription.on_change(RawEventKind.RENAME.value, filename)


class WatchdogBackend(LoggerMixin):
    """
    Watch backend built on a single watchdog observer.

    Directories are scheduled non-recursively. A file is watched through
    its parent directory with events filtered down to that file.
    """

    def __init__(self, use_polling: bool = False, polling_timeout: float = 1.0) -> None:
        """
        Initialize the backend.

        Args:
            use_polling: Use watchdog's stat-polling observer instead of the
                native one (network filesystems, containers without inotify)
            polling_timeout: Polling observer interval in seconds
        """
        self._use_polling = use_polling
        self._polling_timeout = polling_timeout
        self._observer: BaseObserver | None = None
        self._dispatchers: dict[str, _DirectoryDispatcher] = {}
        self._lock = threading.RLock()

    def _ensure_observer(self) -> BaseObserver:
        if self._observer is None:
            if self._use_polling:
                observer: BaseObserver = PollingObserver(timeout=self._polling_timeout)
            else:
                observer = Observer()
            observer.start()
            self._observer = observer
            self.log.debug("observer_started", polling=self._use_polling)
        return self._observer

    def watch(
        self, path: str, on_change: RawChangeCallback, on_error: RawErrorCallback
    ) -> Subscription:
        """
        Start watching a file or directory.

        Raises:
            WatchEstablishError: The path is gone or the OS refused the watch
        """
        is_directory = os.path.isdir(path)
        if not is_directory and not os.path.exists(path):
            raise WatchEstablishError(path, f"path does not exist: {path}")

        target = os.path.abspath(path)
        directory = target if is_directory else os.path.dirname(target)
        subscription = Subscription(
            path=path,
            target=target,
            directory=directory,
            is_directory=is_directory,
            on_change=on_change,
            on_error=on_error,
        )

        with self._lock:
            dispatcher = self._dispatchers.get(directory)
            if dispatcher is None:
                dispatcher = _DirectoryDispatcher(directory)
                try:
                    observer = self._ensure_observer()
                    dispatcher.watch = observer.schedule(dispatcher, directory, recursive=False)
                except OSError as e:
                    raise WatchEstablishError(path, str(e)) from e
                self._dispatchers[directory] = dispatcher
            dispatcher.add(subscription)

        return subscription

    def unwatch(self, token: Subscription) -> None:
        """Stop delivering events for a subscription."""
        token.active = False
        with self._lock:
            dispatcher = self._dispatchers.get(token.directory)
            if dispatcher is None or not dispatcher.discard(token):
                return
            del self._dispatchers[token.directory]
            if self._observer is not None and dispatcher.watch is not None:
                try:
                    self._observer.unschedule(dispatcher.watch)
                except (KeyError, OSError) as e:
                    # Emitter already gone (directory deleted under it)
                    self.log.debug("unschedule_failed", directory=token.directory, error=str(e))

    def close(self) -> None:
        """Stop the observer thread and drop all subscriptions."""
        with self._lock:
            observer = self._observer
            self._observer = None
            self._dispatchers.clear()

        if observer is not None:
            observer.stop()
            observer.join(timeout=5.0)
            self.log.debug("observer_stopped")

    @property
    def watch_count(self) -> int:
        """Number of directories currently scheduled."""
        return len(self._dispatchers)
