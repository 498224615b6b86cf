"""
PathNotify Watch Registry.

Owns the backend watch handle of every watched path.
Requires Python 3.11+.
"""

import itertools
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from notify.backends import WatchBackend
from notify.errors import WatchEstablishError
from utils.logger import LoggerMixin

_generations = itertools.count(1)


@dataclass(eq=False)
class WatchHandle:
    """
    An active watch on one path.

    ``path`` is a back-reference for lookups; the registry owns the
    handle and is the only place that closes it.
    """

    path: str
    token: Any = None
    generation: int = field(default_factory=lambda: next(_generations))
    closed: bool = False


ChangeHandler = Callable[[WatchHandle, str, str | None], None]
ErrorHandler = Callable[[WatchHandle, BaseException], None]


class WatchRegistry(LoggerMixin):
    """Maps each watched path to exactly one live WatchHandle."""

    def __init__(
        self,
        backend: WatchBackend,
        on_register: Callable[[WatchHandle], None] | None = None,
    ) -> None:
        """
        Initialize the registry.

        Args:
            backend: OS watch primitive used to create handles
            on_register: Called with every newly registered handle
        """
        self._backend = backend
        self._on_register = on_register
        self._handles: dict[str, WatchHandle] = {}

    def register(
        self, path: str, on_change: ChangeHandler, on_error: ErrorHandler
    ) -> WatchHandle:
        """
        Establish a watch for a path.

        Args:
            path: Path to watch; must not be registered already
            on_change: Receives ``(handle, kind, filename)`` notifications
            on_error: Receives ``(handle, error)`` when the watch breaks

        Returns:
            The new handle

        Raises:
            WatchEstablishError: The backend refused the path
        """
        if path in self._handles:
            raise WatchEstablishError(path, f"already watched: {path}")

        handle = WatchHandle(path=path)
        try:
            handle.token = self._backend.watch(
                path,
                lambda kind, filename: on_change(handle, kind, filename),
                lambda err: on_error(handle, err),
            )
        except WatchEstablishError:
            raise
        except OSError as e:
            raise WatchEstablishError(path, str(e)) from e

        self._handles[path] = handle
        self.log.debug("watch_registered", path=path, generation=handle.generation)

        if self._on_register is not None:
            self._on_register(handle)
        return handle

    def lookup(self, path: str) -> WatchHandle | None:
        """Get the live handle for a path."""
        return self._handles.get(path)

    def is_current(self, handle: WatchHandle) -> bool:
        """Check that a handle is still the live one for its path."""
        return not handle.closed and self._handles.get(handle.path) is handle

    def unregister(self, path: str) -> bool:
        """
        Close and forget the handle for a path.

        Returns:
            True if a handle was registered for the path
        """
        handle = self._handles.pop(path, None)
        if handle is None:
            return False
        self._close_handle(handle)
        self.log.debug("watch_unregistered", path=path, generation=handle.generation)
        return True

    def close_all(self) -> int:
        """
        Close every handle.

        Returns:
            Number of handles closed
        """
        handles = list(self._handles.values())
        self._handles.clear()
        for handle in handles:
            self._close_handle(handle)
        return len(handles)

    def _close_handle(self, handle: WatchHandle) -> None:
        if handle.closed:
            return
        handle.closed = True
        self._backend.unwatch(handle.token)

    def paths(self) -> list[str]:
        """All watched paths."""
        return list(self._handles)

    def __contains__(self, path: object) -> bool:
        return path in self._handles

    def __len__(self) -> int:
        return len(self._handles)
