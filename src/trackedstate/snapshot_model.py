"""
Value types for change events and the undo/redo ledger.

Design Philosophy: Correct by Construction
- Immutable events and history points (frozen dataclasses)
- Writer identity is an opaque token compared by identity
- Direct attribute access (no getattr fallbacks)
"""

from dataclasses import dataclass
from typing import Any, Dict, Hashable, Optional, Tuple
import datetime
import itertools
import time

from trackedstate.flatten import Leaf, PropertyPath

_writer_ids = itertools.count(1)


class WriterToken:
    """Opaque identity of the originator of an update.

    Used only to let a listener ignore its own writes. Two tokens are equal
    only if they are the same object, so a token cannot be forged from its
    name. Carries no reference to any tracked data.
    """
    __slots__ = ('name', '_serial')

    def __init__(self, name: Optional[str] = None):
        self._serial = next(_writer_ids)
        self.name = name if name is not None else f"writer-{self._serial}"

    def __repr__(self) -> str:
        return f"WriterToken({self.name!r})"

    def __copy__(self) -> 'WriterToken':
        return self

    def __deepcopy__(self, memo) -> 'WriterToken':
        # Copies of events and history points keep the same identity
        return self


def new_writer(name: Optional[str] = None) -> WriterToken:
    """Create a fresh writer identity."""
    return WriterToken(name)


@dataclass(frozen=True)
class PropertyUpdate:
    """One path transition: old_value -> new_value."""
    path: PropertyPath
    old_value: Any
    new_value: Any

    @property
    def property(self) -> Hashable:
        """Last segment of the path."""
        return self.path[-1]


@dataclass(frozen=True)
class ChangeEvent:
    """A delivered batch of property updates attributed to one writer."""
    writer: WriterToken
    updates: Tuple[PropertyUpdate, ...]

    @property
    def paths(self) -> Tuple[PropertyPath, ...]:
        return tuple(u.path for u in self.updates)


@dataclass(frozen=True)
class HistoryPoint:
    """One recorded ledger step.

    Analogous to a commit: the deltas are the leaves written at this step, in
    application order. Point 0 holds every leaf of the initial record.
    """
    timestamp: float
    writer: WriterToken
    step: int  # Sequence index in the ledger
    update: int  # Running count of real write operations
    deltas: Tuple[Leaf, ...]

    @classmethod
    def create(
        cls,
        writer: WriterToken,
        step: int,
        update: int,
        deltas: Tuple[Leaf, ...],
    ) -> 'HistoryPoint':
        """Create a new history point stamped with the current time."""
        return cls(
            timestamp=time.time(),
            writer=writer,
            step=step,
            update=update,
            deltas=tuple(deltas),
        )

    @property
    def paths(self) -> Tuple[PropertyPath, ...]:
        return tuple(leaf.path for leaf in self.deltas)

    def touches(self, path: PropertyPath) -> bool:
        return any(leaf.path == path for leaf in self.deltas)

    def value_for(self, path: PropertyPath) -> Any:
        """Value this point wrote at ``path`` (last write wins within a point)."""
        for leaf in reversed(self.deltas):
            if leaf.path == path:
                return leaf.value
        raise KeyError(path)

    def to_dict(self) -> Dict:
        """Plain-dict view for display and logging."""
        return {
            'timestamp': datetime.datetime.fromtimestamp(self.timestamp).strftime('%H:%M:%S.%f')[:-3],
            'writer': self.writer.name,
            'step': self.step,
            'update': self.update,
            'deltas': [{'path': list(leaf.path), 'value': leaf.value} for leaf in self.deltas],
        }
