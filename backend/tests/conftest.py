"""
PathNotify Test Configuration.

Pytest fixtures and configuration.
Requires Python 3.11+.
"""

import os
from collections.abc import AsyncGenerator, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio

from notify.engine import ReconciliationEngine
from notify.errors import HandleInvalidatedError, WatchEstablishError
from notify.models import WatchEvent
from utils.config import WatcherSettings


@dataclass(eq=False)
class FakeWatch:
    """Token handed out by FakeBackend."""

    path: str
    on_change: Callable[[str, str | None], None]
    on_error: Callable[[BaseException], None]
    active: bool = True


@dataclass
class FakeBackend:
    """
    In-memory watch backend.

    Tests drive raw notifications with ``notify``/``fail`` instead of
    waiting on real filesystem events.
    """

    watches: dict[str, FakeWatch] = field(default_factory=dict)
    refusals: dict[str, int] = field(default_factory=dict)
    created: list[str] = field(default_factory=list)
    released: list[str] = field(default_factory=list)
    close_calls: int = 0

    def refuse(self, path: Path | str, times: int = 1) -> None:
        """Make the next ``times`` watch attempts for a path fail."""
        self.refusals[os.fspath(path)] = times

    def watch(self, path: str, on_change: Any, on_error: Any) -> FakeWatch:
        if self.refusals.get(path, 0) > 0:
            self.refusals[path] -= 1
            raise WatchEstablishError(path, "refused by fake backend")
        token = FakeWatch(path=path, on_change=on_change, on_error=on_error)
        self.watches[path] = token
        self.created.append(path)
        return token

    def unwatch(self, token: FakeWatch) -> None:
        if not token.active:
            return
        token.active = False
        if self.watches.get(token.path) is token:
            del self.watches[token.path]
        self.released.append(token.path)

    def close(self) -> None:
        self.close_calls += 1

    def notify(self, path: Path | str, kind: str = "change", filename: str | None = None) -> None:
        """Deliver a raw change notification on the live watch of a path."""
        self.watches[os.fspath(path)].on_change(kind, filename)

    def fail(self, path: Path | str, err: BaseException | None = None) -> None:
        """Deliver a backend error on the live watch of a path."""
        path = os.fspath(path)
        self.watches[path].on_error(err or HandleInvalidatedError(path, "gone"))


class EventRecorder:
    """Collects every event an engine publishes."""

    def __init__(self, engine: ReconciliationEngine) -> None:
        self.changes: list[tuple[str, Any]] = []
        self.removed: list[str] = []
        self.closes = 0
        engine.on(WatchEvent.CHANGE, lambda path, snapshot: self.changes.append((path, snapshot)))
        engine.on(WatchEvent.REMOVED, self.removed.append)
        engine.on(WatchEvent.CLOSE, self._on_close)

    def _on_close(self) -> None:
        self.closes += 1

    @property
    def changed_paths(self) -> list[str]:
        return [path for path, _ in self.changes]


def set_mtime(path: Path, mtime_ns: int) -> None:
    """Set both access and modification time to an exact value."""
    os.utime(path, ns=(mtime_ns, mtime_ns))


@pytest.fixture
def backend() -> FakeBackend:
    """Create a fake watch backend."""
    return FakeBackend()


@pytest.fixture
def watcher_settings() -> WatcherSettings:
    """Watcher settings with immediate retries."""
    return WatcherSettings(max_retries=2, retry_delay_ms=0, poll_interval_ms=0)


@pytest_asyncio.fixture
async def engine(
    backend: FakeBackend, watcher_settings: WatcherSettings
) -> AsyncGenerator[ReconciliationEngine, None]:
    """Create an engine wired to the fake backend."""
    instance = ReconciliationEngine(backend=backend, settings=watcher_settings)
    yield instance
    instance.close()


@pytest.fixture
def recorder(engine: ReconciliationEngine) -> EventRecorder:
    """Record the engine's events."""
    return EventRecorder(engine)


@pytest.fixture
def sample_file(tmp_path: Path) -> Path:
    """A file with a known modification time."""
    file_path = tmp_path / "a.txt"
    file_path.write_text("first\n")
    set_mtime(file_path, 1_600_000_000_000_000_000)
    return file_path


@pytest.fixture
def sample_dir(tmp_path: Path) -> Path:
    """A directory containing one file."""
    dir_path = tmp_path / "docs"
    dir_path.mkdir()
    (dir_path / "F").write_text("inside\n")
    return dir_path
