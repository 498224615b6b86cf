"""
PathNotify Data Models.

Snapshots, resolved changes and event names shared by the engine.
Requires Python 3.11+.
"""

import os
import stat
from dataclasses import dataclass
from enum import Enum


class WatchEvent(str, Enum):
    """Public events published by the reconciliation engine."""

    CHANGE = "change"
    REMOVED = "removed"
    CLOSE = "close"


class RawEventKind(str, Enum):
    """Kinds of raw notifications delivered by a watch backend."""

    CHANGE = "change"
    RENAME = "rename"


@dataclass(frozen=True, slots=True)
class StatSnapshot:
    """Metadata captured for a watched path at the time of observation."""

    mtime_ns: int
    size: int
    is_directory: bool

    @classmethod
    def from_stat_result(cls, result: os.stat_result) -> "StatSnapshot":
        """Build a snapshot from an ``os.stat`` result."""
        return cls(
            mtime_ns=result.st_mtime_ns,
            size=result.st_size,
            is_directory=stat.S_ISDIR(result.st_mode),
        )

    @property
    def mtime(self) -> float:
        """Modification time in seconds since the epoch."""
        return self.mtime_ns / 1_000_000_000

    def same_mtime(self, other: "StatSnapshot") -> bool:
        """Compare modification times by value."""
        return self.mtime_ns == other.mtime_ns


@dataclass(frozen=True, slots=True)
class ResolvedChange:
    """A logical change: the entity that changed and its fresh snapshot."""

    path: str
    snapshot: StatSnapshot
