"""
Tests for the Change Resolver.

Requires Python 3.11+.
"""

import asyncio
import os
from pathlib import Path

import pytest

from notify.errors import StatFailure
from notify.models import StatSnapshot
from notify.registry import WatchHandle, WatchRegistry
from notify.resolver import ChangeResolver
from notify.stat_cache import StatCache

from tests.conftest import FakeBackend, set_mtime


def noop(*args) -> None:
    return None


class TestChangeResolver:
    """Test cases for ChangeResolver."""

    @pytest.fixture
    def stat_cache(self) -> StatCache:
        """Create an empty stat cache."""
        return StatCache()

    @pytest.fixture
    def registry(self, backend: FakeBackend) -> WatchRegistry:
        """Create a registry without initial stats."""
        return WatchRegistry(backend)

    @pytest.fixture
    def resolver(self, stat_cache: StatCache, registry: WatchRegistry) -> ChangeResolver:
        """Create a resolver using real stats."""
        return ChangeResolver(stat_cache, registry)

    def watch(self, registry: WatchRegistry, path: Path) -> WatchHandle:
        return registry.register(str(path), noop, noop)

    @pytest.mark.asyncio
    async def test_file_change_resolves_to_watched_path(
        self,
        resolver: ChangeResolver,
        registry: WatchRegistry,
        stat_cache: StatCache,
        sample_file: Path,
    ):
        """Test that a file handle reports its own path."""
        handle = self.watch(registry, sample_file)

        change = await resolver.resolve(handle, "change", "a.txt")

        assert change is not None
        assert change.path == str(sample_file)
        assert stat_cache.get(str(sample_file)) == change.snapshot

    @pytest.mark.asyncio
    async def test_directory_change_resolves_to_entry(
        self, resolver: ChangeResolver, registry: WatchRegistry, sample_dir: Path
    ):
        """Test that a directory handle reports the entry inside it."""
        handle = self.watch(registry, sample_dir)

        change = await resolver.resolve(handle, "change", "F")

        assert change is not None
        assert change.path == os.path.join(str(sample_dir), "F")
        assert change.snapshot.is_directory

    @pytest.mark.asyncio
    async def test_type_is_re_evaluated(
        self, resolver: ChangeResolver, registry: WatchRegistry, tmp_path: Path
    ):
        """Test that a path replaced by a directory is resolved as one."""
        target = tmp_path / "entry"
        target.write_text("file")
        handle = self.watch(registry, target)

        first = await resolver.resolve(handle, "change", "entry")
        target.unlink()
        target.mkdir()
        second = await resolver.resolve(handle, "rename", "child")

        assert first.path == str(target)
        assert second.path == os.path.join(str(target), "child")

    @pytest.mark.asyncio
    async def test_stat_failure_is_silent(
        self, stat_cache: StatCache, registry: WatchRegistry, sample_file: Path
    ):
        """Test that a failing stat yields no change and no exception."""

        async def failing_stat(path: str) -> StatSnapshot:
            raise StatFailure(path, "I/O error")

        resolver = ChangeResolver(stat_cache, registry, failing_stat)
        handle = self.watch(registry, sample_file)

        assert await resolver.resolve(handle, "change", "a.txt") is None
        assert stat_cache.get(str(sample_file)) is None

    @pytest.mark.asyncio
    async def test_closed_handle_result_is_discarded(
        self,
        resolver: ChangeResolver,
        registry: WatchRegistry,
        stat_cache: StatCache,
        sample_file: Path,
    ):
        """Test that results for an unregistered handle are dropped."""
        handle = self.watch(registry, sample_file)
        registry.unregister(str(sample_file))

        assert await resolver.resolve(handle, "change", "a.txt") is None
        assert await resolver.capture_initial(handle) is None
        assert str(sample_file) not in stat_cache

    @pytest.mark.asyncio
    async def test_missing_filename_is_gated_on_mtime(
        self,
        resolver: ChangeResolver,
        registry: WatchRegistry,
        stat_cache: StatCache,
        sample_file: Path,
    ):
        """Test the verification fallback when no filename is given."""
        handle = self.watch(registry, sample_file)
        await resolver.capture_initial(handle)

        assert await resolver.resolve(handle, "change", None) is None

        set_mtime(sample_file, 1_600_000_010_000_000_000)
        change = await resolver.resolve(handle, "change", None)

        assert change is not None
        assert change.path == str(sample_file)
        assert change.snapshot.mtime_ns == 1_600_000_010_000_000_000

    @pytest.mark.asyncio
    async def test_verify_skips_unobserved_paths(
        self, resolver: ChangeResolver, registry: WatchRegistry, sample_file: Path
    ):
        """Test that a path without a cached snapshot is not compared."""
        self.watch(registry, sample_file)

        assert await resolver.verify_path(str(sample_file)) is None

    @pytest.mark.asyncio
    async def test_verify_skips_unwatched_paths(
        self, resolver: ChangeResolver, stat_cache: StatCache, sample_file: Path
    ):
        """Test that a cached path with no watch is not reported."""
        stat_cache.record(str(sample_file), StatSnapshot(mtime_ns=1, size=0, is_directory=False))

        assert await resolver.verify_path(str(sample_file)) is None

    @pytest.mark.asyncio
    async def test_sweep_result_dropped_when_handle_replaced(
        self, stat_cache: StatCache, registry: WatchRegistry, sample_file: Path
    ):
        """Test that a sweep stat is not applied to a handle created after it started."""
        path = str(sample_file)
        started = asyncio.Event()
        release = asyncio.Event()

        async def gated_stat(target: str) -> StatSnapshot:
            started.set()
            await release.wait()
            return StatSnapshot(mtime_ns=2, size=0, is_directory=False)

        resolver = ChangeResolver(stat_cache, registry, gated_stat)
        self.watch(registry, sample_file)
        stat_cache.record(path, StatSnapshot(mtime_ns=1, size=0, is_directory=False))

        sweep = asyncio.create_task(resolver.verify_path(path))
        await started.wait()
        registry.unregister(path)
        self.watch(registry, sample_file)
        release.set()

        assert await sweep is None
        assert stat_cache.get(path).mtime_ns == 1
