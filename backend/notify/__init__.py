"""
PathNotify Watch Engine Package.

File-change notifications for a set of watched paths.
Requires Python 3.11+.
"""

from notify.backends import WatchBackend, WatchdogBackend
from notify.engine import ReconciliationEngine, watch_one
from notify.errors import (
    HandleInvalidatedError,
    NotifyError,
    PathNotFoundError,
    StatFailure,
    WatchEstablishError,
)
from notify.events import EventChannel
from notify.models import RawEventKind, ResolvedChange, StatSnapshot, WatchEvent
from notify.registry import WatchHandle, WatchRegistry
from notify.resolver import ChangeResolver
from notify.stat_cache import StatCache, fetch_snapshot

__version__ = "0.1.0"

__all__ = [
    "ChangeResolver",
    "EventChannel",
    "HandleInvalidatedError",
    "NotifyError",
    "PathNotFoundError",
    "RawEventKind",
    "ReconciliationEngine",
    "ResolvedChange",
    "StatCache",
    "StatFailure",
    "StatSnapshot",
    "WatchBackend",
    "WatchEstablishError",
    "WatchEvent",
    "WatchHandle",
    "WatchRegistry",
    "WatchdogBackend",
    "fetch_snapshot",
    "watch_one",
    "__version__",
]
