"""
Tracker configuration.

Holds the options a ChangeTracker is built with and a module-level default
that trackers constructed without explicit options fall back to.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class TrackerOptions:
    """Options for a ChangeTracker and its notification pipeline.

    Attributes:
        buffer_window: Seconds updates are buffered before delivery. 0 delivers
            synchronously on every publish.
        dedup_enabled: Collapse repeated updates to the same path within one
            window into a single net transition.
    """
    buffer_window: float = 0.1
    dedup_enabled: bool = True

    def __post_init__(self):
        if self.buffer_window < 0:
            raise ValueError(f"buffer_window must be >= 0, got {self.buffer_window!r}")


_default_options: TrackerOptions = TrackerOptions()


def set_default_options(options: TrackerOptions) -> None:
    """Set the options used by trackers constructed without explicit options."""
    global _default_options
    if not isinstance(options, TrackerOptions):
        raise TypeError(f"Expected TrackerOptions, got {type(options).__name__}")
    _default_options = options


def get_default_options() -> TrackerOptions:
    """Get the current default tracker options."""
    return _default_options


def reset_default_options() -> None:
    """Restore the built-in defaults."""
    global _default_options
    _default_options = TrackerOptions()
