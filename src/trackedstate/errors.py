"""Exceptions raised by the change-tracking engine."""

from typing import Any, Tuple


class ChangeTrackerError(Exception):
    """Base class for all trackedstate errors."""


class PathNotFound(ChangeTrackerError, KeyError):
    """A property path does not address anything in the current record.

    Raised from reads. Writes catch it and turn into no-ops, so a stale path
    never aborts a batch.
    """

    def __init__(self, path: Tuple[Any, ...], segment: Any = None):
        self.path = path
        self.segment = segment
        super().__init__(path)

    def __str__(self) -> str:
        if self.segment is None:
            return f"Path not found: {self.path!r}"
        return f"Path not found: {self.path!r} (missing segment {self.segment!r})"
