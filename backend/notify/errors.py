"""
PathNotify Errors.

Failure taxonomy for watch establishment, stat queries and handle loss.
Requires Python 3.11+.
"""


class NotifyError(Exception):
    """Base class for all watch engine errors."""

    def __init__(self, path: str, message: str | None = None) -> None:
        self.path = path
        super().__init__(message or path)


class PathNotFoundError(NotifyError):
    """The path did not exist when it was added."""


class WatchEstablishError(NotifyError):
    """The watch backend refused to watch a path."""


class StatFailure(NotifyError):
    """A stat query for a watched path failed."""


class HandleInvalidatedError(NotifyError):
    """A watch handle stopped being valid (watched entry deleted or moved away)."""
