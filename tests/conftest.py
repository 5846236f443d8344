"""Pytest configuration and shared fixtures."""
import pytest
from dataclasses import dataclass, field

from trackedstate import ChangeTracker, TrackerOptions, reset_default_options


@dataclass
class Address:
    """Nested dataclass record."""
    street: str = "Boulevar"
    number: int = 1


@dataclass
class Person:
    """Dataclass record with a nested record and an array leaf."""
    name: str = "Matt"
    address: Address = field(default_factory=Address)
    tags: list = field(default_factory=list)


@pytest.fixture(autouse=True)
def restore_default_options():
    """Restore module default options after each test."""
    yield
    reset_default_options()


@pytest.fixture
def person_record():
    """Plain nested dict record."""
    return {"name": "Matt", "address": {"street": "Boulevar", "number": 1}}


@pytest.fixture
def person_dataclass():
    """Dataclass record equivalent to person_record, plus a tags array."""
    return Person(tags=["a", "b"])


@pytest.fixture
def tracker(person_record):
    """Tracker delivering synchronously, so tests need no waiting."""
    t = ChangeTracker(person_record, TrackerOptions(buffer_window=0))
    yield t
    t.close()


@pytest.fixture
def buffered_tracker(person_record):
    """Tracker with a long window; tests close it explicitly with flush()."""
    t = ChangeTracker(person_record, TrackerOptions(buffer_window=60))
    yield t
    t.close()
