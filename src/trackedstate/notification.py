"""
Buffered, deduplicating delivery of change events.

Events published into a NotificationPipeline are held for one buffer window.
When the window closes the batch is deduplicated so each path touched in the
window is reported once, as a single net transition from its oldest old value
to its newest new value, and the surviving events are handed to every
matching subscription.

A window of 0 delivers synchronously inside publish().
"""

from dataclasses import replace
from typing import Any, Callable, Deque, Dict, Hashable, Iterator, List, Optional, Tuple
import collections
import logging
import queue
import threading

from trackedstate.flatten import PropertyPath
from trackedstate.snapshot_model import ChangeEvent, PropertyUpdate

logger = logging.getLogger(__name__)

Comparer = Callable[[PropertyPath, Any, Any], bool]

_CLOSED = object()  # Queue sentinel ending blocking iteration


def default_comparer(path: PropertyPath, old_value: Any, new_value: Any) -> bool:
    """Report equality of two values at ``path``."""
    return old_value is new_value or old_value == new_value


def dedupe_events(events: List[ChangeEvent], comparer: Comparer = default_comparer) -> List[ChangeEvent]:
    """Collapse a window of events into one net transition per path.

    Events and the updates inside them are walked newest to oldest. The first
    update seen for a path survives; every older update for that path is
    dropped after handing its old_value to the survivor. Events with nothing
    left are dropped, chronological order is restored, and survivors whose
    net transition is a no-op (old == new) are filtered out last.

    Args:
        events: Events in publish order
        comparer: Equality check used for the final no-op filter

    Returns:
        New event list; the input events are not modified.
    """
    survivors: Dict[PropertyPath, PropertyUpdate] = {}
    kept: List[Tuple[ChangeEvent, List[PropertyPath]]] = []

    for event in reversed(events):
        event_paths: List[PropertyPath] = []
        for update in reversed(event.updates):
            recent = survivors.get(update.path)
            if recent is not None:
                # Older transition: the survivor now starts from this old value
                survivors[update.path] = replace(recent, old_value=update.old_value)
                continue
            survivors[update.path] = update
            event_paths.append(update.path)
        if event_paths:
            event_paths.reverse()
            kept.append((event, event_paths))

    result: List[ChangeEvent] = []
    for event, event_paths in reversed(kept):
        updates = tuple(
            survivors[path] for path in event_paths
            if not comparer(path, survivors[path].old_value, survivors[path].new_value)
        )
        if updates:
            result.append(replace(event, updates=updates))
    return result


class Subscription:
    """A live feed of change events for one observer.

    Only sees events delivered after it was created. Without a callback,
    events queue up (unbounded) until read with get(), get_nowait(), drain()
    or iteration. With a callback, each event is passed to it on the
    delivering thread instead. A transform maps each accepted event to the
    item that is queued or passed to the callback.
    """

    def __init__(
        self,
        pipeline: 'NotificationPipeline',
        observer: Hashable,
        include_own_updates: bool = False,
        callback: Optional[Callable[[Any], None]] = None,
        transform: Optional[Callable[[ChangeEvent], Any]] = None,
    ):
        self._pipeline = pipeline
        self.observer = observer
        self.include_own_updates = include_own_updates
        self._callback = callback
        self._transform = transform
        self._queue: Optional['queue.Queue[Any]'] = queue.Queue() if callback is None else None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def accepts(self, event: ChangeEvent) -> bool:
        """True unless the event was written by this observer and own updates are excluded."""
        return self.include_own_updates or event.writer != self.observer

    def _deliver(self, event: ChangeEvent) -> None:
        if self._closed or not self.accepts(event):
            return
        try:
            item = self._transform(event) if self._transform is not None else event
            if self._callback is not None:
                self._callback(item)
                return
        except Exception as e:
            logger.warning(f"Error in change listener for {self.observer!r}: {e}")
            return
        self._queue.put(item)

    def get(self, block: bool = True, timeout: Optional[float] = None) -> ChangeEvent:
        """Return the next event, blocking until one arrives by default.

        Raises:
            queue.Empty: Nothing arrived within ``timeout``, or the
                subscription was closed.
        """
        if self._queue is None:
            raise RuntimeError("Callback subscriptions do not queue events")
        item = self._queue.get(block=block, timeout=timeout)
        if item is _CLOSED:
            # Leave the sentinel for other readers
            self._queue.put(_CLOSED)
            raise queue.Empty
        return item

    def get_nowait(self) -> ChangeEvent:
        """Return the next queued event or raise queue.Empty."""
        return self.get(block=False)

    def drain(self) -> List[ChangeEvent]:
        """Return every event queued so far without blocking."""
        events: List[ChangeEvent] = []
        if self._queue is None:
            return events
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return events
            if item is _CLOSED:
                self._queue.put(_CLOSED)
                return events
            events.append(item)

    def __iter__(self) -> Iterator[ChangeEvent]:
        """Yield events as they arrive until the subscription is closed."""
        if self._queue is None:
            raise RuntimeError("Callback subscriptions do not queue events")
        while True:
            item = self._queue.get()
            if item is _CLOSED:
                self._queue.put(_CLOSED)
                return
            yield item

    def close(self) -> None:
        """Stop receiving events and detach from the pipeline."""
        if self._closed:
            return
        self._closed = True
        self._pipeline._remove(self)
        if self._queue is not None:
            self._queue.put(_CLOSED)

    unsubscribe = close

    def __enter__(self) -> 'Subscription':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class NotificationPipeline:
    """Time-windowed buffer between writers and subscriptions.

    The first event published into an empty buffer arms a daemon timer for
    ``buffer_window`` seconds; when it fires the buffer is drained,
    deduplicated (if enabled) and delivered.
    """

    def __init__(
        self,
        buffer_window: float,
        dedup_enabled: bool = True,
        comparer: Comparer = default_comparer,
    ):
        self.buffer_window = buffer_window
        self.dedup_enabled = dedup_enabled
        self._comparer = comparer
        self._lock = threading.Lock()
        self._pending: List[ChangeEvent] = []
        self._outbox: Deque[ChangeEvent] = collections.deque()  # Deduplicated, awaiting delivery
        self._delivering = False
        self._subscriptions: List[Subscription] = []
        self._timer: Optional[threading.Timer] = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        """Number of events waiting for the current window to close."""
        with self._lock:
            return len(self._pending)

    def listen(
        self,
        observer: Hashable,
        include_own_updates: bool = False,
        callback: Optional[Callable[[Any], None]] = None,
        transform: Optional[Callable[[ChangeEvent], Any]] = None,
    ) -> Subscription:
        """Subscribe to events not written by ``observer``.

        Args:
            observer: Identity of the listener, usually a WriterToken
            include_own_updates: Also deliver events written by ``observer``
            callback: Called with each event instead of queueing it
            transform: Maps each event to the item actually delivered
        """
        subscription = Subscription(self, observer, include_own_updates, callback, transform)
        with self._lock:
            if self._closed:
                subscription._closed = True
                if subscription._queue is not None:
                    subscription._queue.put(_CLOSED)
                return subscription
            self._subscriptions.append(subscription)
        logger.debug(f"🔔 Connected listener: {observer!r} (own_updates={include_own_updates})")
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)
                logger.debug(f"🔔 Disconnected listener: {subscription.observer!r}")

    def publish(self, event: ChangeEvent) -> None:
        """Queue an event for delivery at the end of the current window."""
        if not event.updates:
            return
        with self._lock:
            if self._closed:
                logger.warning(f"🔔 Dropping event from {event.writer!r}: pipeline is closed")
                return
            self._pending.append(event)
            immediate = self.buffer_window <= 0
            if not immediate and self._timer is None:
                self._timer = threading.Timer(self.buffer_window, self._on_window_closed)
                self._timer.daemon = True
                self._timer.start()
        if immediate:
            self.flush()

    def _on_window_closed(self) -> None:
        self.flush()

    def flush(self) -> int:
        """Close the current window now and deliver its events.

        Delivery is serialized. If another flush is already delivering (on
        this thread, from inside a callback, or on the timer thread), the
        batch is queued behind it and delivered by that flush, so every
        subscriber sees batches in the order their windows closed.

        Returns:
            Number of events in this batch after deduplication.
        """
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            batch, self._pending = self._pending, []
            if not batch:
                return 0
            events = dedupe_events(batch, self._comparer) if self.dedup_enabled else batch
            logger.debug(f"🔔 Window closed: {len(batch)} event(s) -> {len(events)} after dedup")
            self._outbox.extend(events)
            if self._delivering:
                return len(events)
            self._delivering = True

        try:
            self._deliver_outbox()
        except BaseException:
            with self._lock:
                self._delivering = False
            raise
        return len(events)

    def _deliver_outbox(self) -> None:
        while True:
            with self._lock:
                if not self._outbox:
                    self._delivering = False
                    return
                event = self._outbox.popleft()
                subscriptions = list(self._subscriptions)
            for subscription in subscriptions:
                subscription._deliver(event)

    def close(self) -> None:
        """Deliver anything still buffered, then close every subscription."""
        self.flush()
        with self._lock:
            self._closed = True
            subscriptions = list(self._subscriptions)
        for subscription in subscriptions:
            subscription.close()
