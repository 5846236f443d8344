"""
ChangeTracker: owns a record, applies path-addressed writes, records history.

The record is never mutated in place. Every accepted write produces a new
record (copy-on-write), appends one HistoryPoint to the ledger, and forwards
a PropertyUpdate either to the open transaction buffer or to the
notification pipeline. Undo/redo rebuild the record at a ledger index and
dispatch the difference as one change event, without appending history.

Thread safety: every public operation runs under one reentrant lock. The
transaction counter is not a lock; beginning a transaction on one thread and
writing from another is a caller error.
"""
from contextlib import contextmanager
from typing import Any, Callable, Dict, Generator, Hashable, Iterable, Iterator, List, Optional, Tuple
import copy
import logging
import threading

from trackedstate.config import TrackerOptions, get_default_options
from trackedstate.errors import PathNotFound
from trackedstate.flatten import (
    Leaf,
    PathLike,
    PropertyPath,
    assign,
    coerce_path,
    flatten,
    flatten_to_dict,
    is_record,
    resolve,
    unwrap,
    wrap_atomic,
)
from trackedstate.history import HistoryLedger
from trackedstate.notification import Comparer, NotificationPipeline, Subscription, default_comparer
from trackedstate.snapshot_model import ChangeEvent, HistoryPoint, PropertyUpdate, WriterToken

logger = logging.getLogger(__name__)


class ChangeTracker:
    """
    Change-tracked container for one nested record.

    Core Attributes:
    - _initial: Record at construction (deep copy of the caller's value)
    - _record: Current record, replaced on every write
    - _ledger: HistoryLedger of applied deltas, point 0 = every initial leaf
    - _pending: Updates buffered while a transaction is open
    - _pipeline: NotificationPipeline delivering ChangeEvents to listeners

    Everything else is derived:
    - value -> unwrapped deep copy of _record
    - updating -> _updating > 0
    - number_of_changes -> len(_ledger) - 1
    """

    def __init__(
        self,
        initial: Any,
        options: Optional[TrackerOptions] = None,
        comparer: Optional[Comparer] = None,
        writer: Optional[WriterToken] = None,
    ):
        """
        Args:
            initial: Record to track (mapping or dataclass instance). Deep-copied.
            options: Buffering options; defaults to get_default_options()
            comparer: ``comparer(path, old, new) -> bool`` reporting equality.
                Writes and net transitions it reports equal are dropped.
            writer: Identity used when an operation names no writer
        """
        if not is_record(initial):
            raise TypeError(f"Tracked value must be a mapping or dataclass instance, got {type(initial).__name__}")

        self._options = options if options is not None else get_default_options()
        self._comparer: Comparer = comparer if comparer is not None else default_comparer
        self._writer = writer if writer is not None else WriterToken('tracker')
        self._lock = threading.RLock()

        # === Record (copy-on-write) ===
        self._initial = copy.deepcopy(initial)
        self._record = self._initial

        # === Transactions ===
        self._updating = 0
        self._pending: List[PropertyUpdate] = []

        # === History ===
        self._updates = 0
        # The ledger holds its own copies; nothing in it is shared with _record
        initial_leaves = tuple(flatten(copy.deepcopy(self._initial)))
        initial_point = HistoryPoint.create(self._writer, step=0, update=0, deltas=initial_leaves)
        self._ledger = HistoryLedger(initial_point)

        # === Notification ===
        self._pipeline = NotificationPipeline(
            self._options.buffer_window,
            dedup_enabled=self._options.dedup_enabled,
            comparer=self._comparer,
        )
        logger.debug(f"ChangeTracker created: {len(initial_point.deltas)} leaf/leaves, "
                     f"window={self._options.buffer_window}s, dedup={self._options.dedup_enabled}")

    def __repr__(self) -> str:
        return (f"{type(self).__name__}(writer={self._writer.name!r}, "
                f"history={self._ledger.pointer}/{len(self._ledger) - 1})")

    # ========== STATE ==========

    @property
    def options(self) -> TrackerOptions:
        return self._options

    @property
    def writer(self) -> WriterToken:
        """Identity attributed to operations that name no writer."""
        return self._writer

    @property
    def value(self) -> Any:
        """Current record as plain data (deep copy)."""
        with self._lock:
            return copy.deepcopy(unwrap(self._record))

    @property
    def updating(self) -> bool:
        """True while a transaction is open."""
        return self._updating > 0

    def get_value(self, path: PathLike) -> Any:
        """Return the current value at ``path``.

        Addressing an interior node returns the unwrapped sub-record.

        Raises:
            PathNotFound: Any segment of the path is absent.
        """
        path = coerce_path(path)
        with self._lock:
            return copy.deepcopy(unwrap(resolve(self._record, path)))

    def get_partial_value(self, keys: Iterable[Hashable]) -> Dict[Hashable, Any]:
        """Return a dict holding only the given top-level keys."""
        with self._lock:
            return {key: self.get_value((key,)) for key in keys}

    def leaves(self) -> List[Leaf]:
        """Current leaves in enumeration order."""
        with self._lock:
            return [Leaf(leaf.path, copy.deepcopy(leaf.value)) for leaf in flatten(self._record)]

    def __iter__(self) -> Iterator[Leaf]:
        return iter(self.leaves())

    def to_flat_dict(self, use_path_as_name: bool = True) -> Dict[str, Any]:
        """Current leaves as a flat name -> value dict (see flatten_to_dict)."""
        return flatten_to_dict(self.leaves(), use_path_as_name)

    # ========== WRITES ==========

    def set_value(
        self,
        path: PathLike,
        value: Any,
        writer: Optional[WriterToken] = None,
        emit: bool = True,
    ) -> bool:
        """Write ``value`` at ``path``.

        Unknown paths and values the comparer reports equal are ignored: no
        mutation, no event, no history point. A record value is stored atomic,
        so it becomes a single leaf.

        Args:
            path: Single key or sequence of keys
            value: New value (deep-copied)
            writer: Originator; defaults to the tracker's own writer
            emit: False records history but withholds the notification.
                Ignored inside a transaction, where end_update() decides.

        Returns:
            True if the write was applied.
        """
        path = coerce_path(path)
        writer = writer if writer is not None else self._writer
        with self._lock:
            applied = self._apply(path, value)
            if applied is None:
                return False
            update, delta = applied
            self._updates += 1
            self._ledger.append(writer, (delta,), self._updates)
            self._dispatch(writer, [update], emit)
            return True

    def set_values(
        self,
        partial: Any,
        writer: Optional[WriterToken] = None,
        emit: bool = True,
    ) -> bool:
        """Write every leaf of a partial record as one history step.

        Runs inside an implicit transaction, so listeners get at most one
        event. Leaves that fail validation are skipped without aborting the
        rest of the batch; the history point holds only the applied leaves.

        Returns:
            True if at least one leaf was applied.
        """
        if not partial:
            return False
        if not is_record(partial):
            raise TypeError(f"Partial value must be a mapping or dataclass instance, got {type(partial).__name__}")

        writer = writer if writer is not None else self._writer
        deltas: List[Leaf] = []
        with self._lock:
            self.begin_update()
            try:
                for leaf in flatten(partial):
                    applied = self._apply(leaf.path, leaf.value)
                    if applied is None:
                        continue
                    update, delta = applied
                    deltas.append(delta)
                    self._dispatch(writer, [update], emit)
                if deltas:
                    self._updates += 1
                    self._ledger.append(writer, tuple(deltas), self._updates)
            finally:
                self.end_update(writer=writer, emit=emit)
        return bool(deltas)

    def _apply(self, path: PropertyPath, value: Any) -> Optional[Tuple[PropertyUpdate, Leaf]]:
        """Validate and apply one write. Returns None if it was rejected."""
        try:
            stored = resolve(self._record, path)
        except PathNotFound as e:
            logger.debug(f"Ignoring write: {e}")
            return None

        old_value = unwrap(stored)
        if self._comparer(path, old_value, value):
            return None

        new_value = copy.deepcopy(value)
        self._record = assign(self._record, path, wrap_atomic(new_value))
        update = PropertyUpdate(path, copy.deepcopy(old_value), copy.deepcopy(new_value))
        return update, Leaf(path, copy.deepcopy(new_value))

    def _dispatch(self, writer: WriterToken, updates: List[PropertyUpdate], emit: bool) -> None:
        """Buffer updates in the open transaction, or publish them as one event."""
        if self._updating > 0:
            self._pending.extend(updates)
            logger.debug(f"Buffered {len(updates)} update(s) (depth={self._updating})")
            return
        if not emit:
            return
        self._publish(writer, updates)

    def _publish(self, writer: WriterToken, updates: List[PropertyUpdate]) -> None:
        event = ChangeEvent(writer, tuple(updates))
        if not self.should_notify(event.paths):
            logger.debug(f"Not notifying listeners of {len(updates)} update(s)")
            return
        self._pipeline.publish(event)

    def should_notify(self, paths: Tuple[PropertyPath, ...]) -> bool:
        """Hook deciding whether a committed change reaches listeners.

        Subclasses override it to keep some changes silent. History is
        recorded regardless.
        """
        return True

    # ========== TRANSACTIONS ==========

    def begin_update(self) -> None:
        """Open (or nest) a transaction; writes are buffered until it closes."""
        with self._lock:
            self._updating += 1

    def end_update(self, writer: Optional[WriterToken] = None, emit: bool = True) -> bool:
        """Close one transaction level.

        When the outermost level closes, buffered updates are published as
        a single event attributed to ``writer``, or discarded if ``emit`` is
        False. History is recorded either way.

        Returns:
            False if no transaction was open.
        """
        with self._lock:
            if self._updating == 0:
                logger.warning("end_update() called without matching begin_update()")
                return False
            self._updating -= 1
            if self._updating > 0:
                return True

            pending, self._pending = self._pending, []
            if not pending:
                return True
            if emit:
                self._publish(writer if writer is not None else self._writer, pending)
            else:
                logger.debug(f"Withholding {len(pending)} buffered update(s) (emit=False)")
            return True

    @contextmanager
    def transaction(self, writer: Optional[WriterToken] = None, emit: bool = True) -> Generator['ChangeTracker', None, None]:
        """Context manager grouping writes into one change event.

        Example:
            with tracker.transaction(writer=me):
                tracker.set_value("name", "Tim")
                tracker.set_value(("address", "number"), 2)
            # One event with both updates published here
        """
        self.begin_update()
        try:
            yield self
        finally:
            self.end_update(writer=writer, emit=emit)

    # ========== HISTORY ==========

    @property
    def history(self) -> Tuple[HistoryPoint, ...]:
        """Recorded points (deep copies; writer tokens keep their identity)."""
        with self._lock:
            return copy.deepcopy(self._ledger.points)

    @property
    def history_index(self) -> int:
        """Ledger position the record currently reflects (0 = initial)."""
        return self._ledger.pointer

    @property
    def history_length(self) -> int:
        return len(self._ledger)

    @property
    def number_of_changes(self) -> int:
        return len(self._ledger) - 1

    @property
    def can_undo(self) -> bool:
        return self._ledger.can_undo

    @property
    def can_redo(self) -> bool:
        return self._ledger.can_redo

    def history_info(self) -> List[Dict[str, Any]]:
        """Human-readable history for display (see HistoryLedger.info)."""
        with self._lock:
            return self._ledger.info()

    def add_history_changed_callback(self, callback: Callable[[], None]) -> None:
        """Subscribe to history changes (write recorded or undo/redo)."""
        self._ledger.add_history_changed_callback(callback)

    def remove_history_changed_callback(self, callback: Callable[[], None]) -> None:
        """Unsubscribe from history changes."""
        self._ledger.remove_history_changed_callback(callback)

    def values_at(self, index: int) -> Dict[PropertyPath, Any]:
        """Path -> value mapping merged from history points ``[0..index]``."""
        with self._lock:
            return copy.deepcopy(self._ledger.merge_to_index(index))

    def undo(self, writer: Optional[WriterToken] = None, emit: bool = True) -> bool:
        """Step one point back in history. No-op at the initial state."""
        with self._lock:
            if not self._ledger.can_undo:
                logger.debug("⏱️ UNDO: Already at initial state")
                return False
            return self._travel(self._ledger.pointer - 1, writer, emit)

    def undo_all(self, writer: Optional[WriterToken] = None, emit: bool = True) -> bool:
        """Return to the initial state. No-op if already there."""
        with self._lock:
            if not self._ledger.can_undo:
                logger.debug("⏱️ UNDO_ALL: Already at initial state")
                return False
            return self._travel(0, writer, emit)

    def redo(self, writer: Optional[WriterToken] = None, emit: bool = True) -> bool:
        """Step one point forward in history. No-op at the tail."""
        with self._lock:
            if not self._ledger.can_redo:
                logger.debug("⏱️ REDO: Already at latest state")
                return False
            return self._travel(self._ledger.pointer + 1, writer, emit)

    def redo_all(self, writer: Optional[WriterToken] = None, emit: bool = True) -> bool:
        """Jump to the latest recorded state. No-op if already there."""
        with self._lock:
            if not self._ledger.can_redo:
                logger.debug("⏱️ REDO_ALL: Already at latest state")
                return False
            return self._travel(self._ledger.tail, writer, emit)

    def _travel(self, index: int, writer: Optional[WriterToken], emit: bool) -> bool:
        """Move the record to ledger ``index`` as one transactional write.

        The record at ``index`` is rebuilt by replaying the deltas of points
        1..index onto the initial record, so wholesale writes that changed the
        leaf layout are undone exactly. The difference to the current record
        is dispatched as a single event. No history point is appended.
        """
        target = self._replay(index)
        updates = self._diff(self._record, target)
        previous = self._ledger.pointer
        self._ledger.move_to(index)
        self._record = target
        logger.debug(f"⏱️ TIME_TRAVEL: {previous} -> {index} ({len(updates)} path(s) changed)")
        if updates:
            self._dispatch(writer if writer is not None else self._writer, updates, emit)
        return True

    def _replay(self, index: int) -> Any:
        record = self._initial
        for point in self._ledger.points[1:index + 1]:
            for leaf in point.deltas:
                record = assign(record, leaf.path, wrap_atomic(copy.deepcopy(leaf.value)))
        return record

    def _diff(self, current: Any, target: Any) -> List[PropertyUpdate]:
        """Leaf-by-leaf difference between two records.

        When a wholesale write changed the layout, a path can be a leaf on
        one side and an interior node on the other. The update for that path
        carries the whole sub-record on the interior side, so the leaves
        below it that exist on one side only are not reported separately.
        A path unreachable on one side is reported with None there.
        """
        current_leaves = {leaf.path: leaf.value for leaf in flatten(current)}
        target_leaves = {leaf.path: leaf.value for leaf in flatten(target)}
        paths = list(current_leaves) + [p for p in target_leaves if p not in current_leaves]

        updates: List[PropertyUpdate] = []
        for path in paths:
            if path not in target_leaves and _below_leaf(path, target_leaves):
                continue
            if path not in current_leaves and _below_leaf(path, current_leaves):
                continue
            old_value = current_leaves[path] if path in current_leaves else self._lookup(current, path)
            new_value = target_leaves[path] if path in target_leaves else self._lookup(target, path)
            if self._comparer(path, old_value, new_value):
                continue
            updates.append(PropertyUpdate(path, copy.deepcopy(old_value), copy.deepcopy(new_value)))
        return updates

    @staticmethod
    def _lookup(record: Any, path: PropertyPath) -> Any:
        try:
            return unwrap(resolve(record, path))
        except PathNotFound:
            return None

    # ========== NOTIFICATION ==========

    def listen(
        self,
        observer: Hashable,
        include_own_updates: bool = False,
        callback: Optional[Callable[[ChangeEvent], None]] = None,
    ) -> Subscription:
        """Subscribe to change events written by anyone but ``observer``.

        Args:
            observer: Listener identity, usually the WriterToken it writes with
            include_own_updates: Also receive events written by ``observer``
            callback: Called with each event instead of queueing it
        """
        return self._pipeline.listen(observer, include_own_updates, callback)

    def listen_model(
        self,
        observer: Hashable,
        include_own_updates: bool = False,
        callback: Optional[Callable[[Any], None]] = None,
    ) -> Subscription:
        """Subscribe to whole-record snapshots instead of path updates.

        Each delivered change event is replaced by the current ``value`` at
        delivery time, with the same own-writer filtering as listen().
        """
        return self._pipeline.listen(observer, include_own_updates, callback, transform=lambda event: self.value)

    def flush(self) -> int:
        """Deliver buffered events now instead of waiting for the window."""
        return self._pipeline.flush()

    def close(self) -> None:
        """Deliver anything buffered and close every subscription."""
        self._pipeline.close()

    def __enter__(self) -> 'ChangeTracker':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def _below_leaf(path: PropertyPath, leaves: Dict[PropertyPath, Any]) -> bool:
    """True if a proper prefix of ``path`` is one of ``leaves``."""
    return any(path[:i] in leaves for i in range(1, len(path)))
