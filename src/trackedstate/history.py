"""
Append-only undo/redo ledger.

The ledger is a list of HistoryPoints plus a pointer selecting the point the
tracked record currently reflects. Point 0 is the initial record. Appending
while the pointer is mid-history discards every point after it first, so the
abandoned branch becomes unreachable.
"""

from typing import Any, Callable, Dict, List, Tuple
import datetime
import logging

from trackedstate.errors import PathNotFound
from trackedstate.flatten import Leaf, PropertyPath
from trackedstate.snapshot_model import HistoryPoint, WriterToken

logger = logging.getLogger(__name__)


class HistoryLedger:
    """Sequence of HistoryPoints with a movable pointer.

    Not thread-safe on its own; the owning ChangeTracker serializes access.
    """

    def __init__(self, initial: HistoryPoint):
        self._points: List[HistoryPoint] = [initial]
        self._pointer: int = 0
        # Fired after every append or pointer move
        self._on_history_changed_callbacks: List[Callable[[], None]] = []

    # ========== CALLBACKS ==========

    def add_history_changed_callback(self, callback: Callable[[], None]) -> None:
        """Subscribe to history change events (point appended or pointer moved)."""
        if callback not in self._on_history_changed_callbacks:
            self._on_history_changed_callbacks.append(callback)

    def remove_history_changed_callback(self, callback: Callable[[], None]) -> None:
        """Unsubscribe from history change events."""
        if callback in self._on_history_changed_callbacks:
            self._on_history_changed_callbacks.remove(callback)

    def _fire_history_changed_callbacks(self) -> None:
        for callback in list(self._on_history_changed_callbacks):
            try:
                callback()
            except Exception as e:
                logger.warning(f"Error in history_changed callback: {e}")

    # ========== STATE ==========

    @property
    def points(self) -> Tuple[HistoryPoint, ...]:
        return tuple(self._points)

    @property
    def pointer(self) -> int:
        return self._pointer

    def __len__(self) -> int:
        return len(self._points)

    def __getitem__(self, index: int) -> HistoryPoint:
        return self._points[index]

    @property
    def tail(self) -> int:
        return len(self._points) - 1

    @property
    def at_tail(self) -> bool:
        return self._pointer == self.tail

    @property
    def can_undo(self) -> bool:
        return self._pointer > 0

    @property
    def can_redo(self) -> bool:
        return self._pointer < self.tail

    # ========== TRANSITIONS ==========

    def append(self, writer: WriterToken, deltas: Tuple[Leaf, ...], update: int) -> HistoryPoint:
        """Record a new point, discarding any redo branch first.

        Args:
            writer: Originator of the write
            deltas: Leaves applied at this step, in application order
            update: Running count of write operations

        Returns:
            The appended point, now at the tail.
        """
        discarded = len(self._points) - (self._pointer + 1)
        if discarded:
            del self._points[self._pointer + 1:]
            logger.debug(f"⏱️ HISTORY: Discarded {discarded} point(s) after index {self._pointer}")

        point = HistoryPoint.create(writer, step=len(self._points), update=update, deltas=deltas)
        self._points.append(point)
        self._pointer = point.step
        logger.debug(f"⏱️ HISTORY: Recorded step {point.step} ({len(point.deltas)} delta(s), writer={writer.name})")
        self._fire_history_changed_callbacks()
        return point

    def move_to(self, index: int) -> bool:
        """Move the pointer to ``index``.

        Returns:
            False (and no change) if ``index`` is out of range or already current.
        """
        if index < 0 or index > self.tail:
            logger.warning(f"⏱️ HISTORY: Index {index} out of range [0, {self.tail}]")
            return False
        if index == self._pointer:
            return False
        logger.debug(f"⏱️ HISTORY: Pointer {self._pointer} -> {index}")
        self._pointer = index
        self._fire_history_changed_callbacks()
        return True

    # ========== MERGE ==========

    def known_paths(self) -> List[PropertyPath]:
        """Every path any point has touched, in order of first appearance."""
        seen: Dict[PropertyPath, None] = {}
        for point in self._points:
            for path in point.paths:
                seen.setdefault(path, None)
        return list(seen)

    def value_at(self, path: PropertyPath, index: int) -> Any:
        """Value of ``path`` as of ``index``: the most recent point touching it wins.

        Raises:
            PathNotFound: No point in ``[0..index]`` touched ``path``.
        """
        for point in reversed(self._points[:index + 1]):
            if point.touches(path):
                return point.value_for(path)
        raise PathNotFound(path)

    def merge_to_index(self, index: int) -> Dict[PropertyPath, Any]:
        """Merge points ``[0..index]`` into a path -> value mapping.

        For every known path, points are scanned most-recent-first and the
        first one that touched the path supplies its value. Paths that only
        appear after ``index`` are left out.
        """
        merged: Dict[PropertyPath, Any] = {}
        for point in reversed(self._points[:index + 1]):
            for leaf in reversed(point.deltas):
                merged.setdefault(leaf.path, leaf.value)
        return {path: merged[path] for path in self.known_paths() if path in merged}

    def info(self) -> List[Dict[str, Any]]:
        """Human-readable history for display, oldest first."""
        result = []
        for i, point in enumerate(self._points):
            result.append({
                'index': i,
                'timestamp': datetime.datetime.fromtimestamp(point.timestamp).strftime('%H:%M:%S.%f')[:-3],
                'writer': point.writer.name,
                'step': point.step,
                'update': point.update,
                'paths': ['/'.join(str(s) for s in path) for path in point.paths],
                'is_current': i == self._pointer,
                'is_head': i == self.tail,
            })
        return result
