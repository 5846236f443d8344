"""
Change tracking for nested in-memory records.

This package tracks fine-grained changes to a structured record, notifies
observers in deduplicated batches, and supports multi-step undo/redo.

Key Features:
- Path-based flattening of nested mappings and dataclasses
- Copy-on-write writes validated against a pluggable equality comparer
- Nestable transactions grouping writes into one change event
- Time-windowed, deduplicating notification pipeline with writer filtering
- Model-level stream delivering whole record snapshots
- Append-only undo/redo ledger with branch discard

Quick Start:
    >>> from trackedstate import ChangeTracker, TrackerOptions, new_writer
    >>>
    >>> tracker = ChangeTracker({"name": "Matt"}, TrackerOptions(buffer_window=0))
    >>> me = new_writer("editor")
    >>> events = tracker.listen(me, include_own_updates=True)
    >>>
    >>> tracker.set_value("name", "Leon", writer=me)
    True
    >>> events.get_nowait().updates[0].new_value
    'Leon'
    >>> tracker.undo()
    True
    >>> tracker.get_value("name")
    'Matt'

Modules:
    - flatten: Leaves, atomic wrapper, path resolution and copy-on-write assignment
    - snapshot_model: WriterToken, PropertyUpdate, ChangeEvent, HistoryPoint
    - history: HistoryLedger (undo/redo pointer and merge)
    - notification: NotificationPipeline, Subscription, dedupe_events
    - change_tracker: ChangeTracker
    - config: TrackerOptions and module defaults
    - errors: ChangeTrackerError, PathNotFound
"""

# Configuration
from trackedstate.config import (
    TrackerOptions,
    set_default_options,
    get_default_options,
    reset_default_options,
)

# Errors
from trackedstate.errors import ChangeTrackerError, PathNotFound

# Flattening
from trackedstate.flatten import (
    AtomicValue,
    Leaf,
    coerce_path,
    flatten,
    flatten_to_dict,
    unwrap,
    wrap_atomic,
)

# Events and history points
from trackedstate.snapshot_model import (
    WriterToken,
    new_writer,
    PropertyUpdate,
    ChangeEvent,
    HistoryPoint,
)

# History
from trackedstate.history import HistoryLedger

# Notification
from trackedstate.notification import (
    NotificationPipeline,
    Subscription,
    dedupe_events,
    default_comparer,
)

# Tracker
from trackedstate.change_tracker import ChangeTracker

__all__ = [
    # Configuration
    'TrackerOptions',
    'set_default_options',
    'get_default_options',
    'reset_default_options',
    # Errors
    'ChangeTrackerError',
    'PathNotFound',
    # Flattening
    'AtomicValue',
    'Leaf',
    'coerce_path',
    'flatten',
    'flatten_to_dict',
    'unwrap',
    'wrap_atomic',
    # Events and history points
    'WriterToken',
    'new_writer',
    'PropertyUpdate',
    'ChangeEvent',
    'HistoryPoint',
    # History
    'HistoryLedger',
    # Notification
    'NotificationPipeline',
    'Subscription',
    'dedupe_events',
    'default_comparer',
    # Tracker
    'ChangeTracker',
]

__version__ = '1.0.0'
__description__ = 'Change tracking with deduplicated notification and undo/redo for nested records'
