"""Tests for path flattening and copy-on-write helpers."""
import pytest
from dataclasses import dataclass

from trackedstate import AtomicValue, Leaf, PathNotFound, coerce_path, flatten, flatten_to_dict, unwrap, wrap_atomic
from trackedstate.flatten import assign, is_record, resolve


class TestFlatten:
    """Test flatten()."""

    def test_nested_dict(self, person_record):
        """Nested mappings decompose into one leaf per primitive."""
        leaves = flatten(person_record)

        assert leaves == [
            Leaf(("name",), "Matt"),
            Leaf(("address", "street"), "Boulevar"),
            Leaf(("address", "number"), 1),
        ]

    def test_empty_record(self):
        """Empty records yield nothing, at the root or nested."""
        assert flatten({}) == []
        assert flatten({"a": {}, "b": 1}) == [Leaf(("b",), 1)]

    def test_arrays_are_atomic(self):
        """Lists and tuples are never descended into."""
        leaves = flatten({"items": [{"x": 1}, {"x": 2}], "pair": (1, 2)})

        assert leaves == [
            Leaf(("items",), [{"x": 1}, {"x": 2}]),
            Leaf(("pair",), (1, 2)),
        ]

    def test_atomic_value_is_single_leaf(self):
        """A wrapped record flattens to one leaf carrying the raw value."""
        leaves = flatten({"address": AtomicValue({"street": "Main Road", "number": 2})})

        assert leaves == [Leaf(("address",), {"street": "Main Road", "number": 2})]

    def test_dataclass_field_order(self, person_dataclass):
        """Dataclasses enumerate fields in declaration order."""
        leaves = flatten(person_dataclass)

        assert [leaf.path for leaf in leaves] == [
            ("name",),
            ("address", "street"),
            ("address", "number"),
            ("tags",),
        ]
        assert leaves[-1].value == ["a", "b"]

    def test_insertion_order_is_kept(self):
        """Key order follows mapping insertion order, not sort order."""
        leaves = flatten({"z": 1, "a": 2, "m": 3})

        assert [leaf.name for leaf in leaves] == ["z", "a", "m"]


class TestFlattenToDict:
    """Test flatten_to_dict()."""

    def test_path_as_name(self, person_record):
        result = flatten_to_dict(flatten(person_record))

        assert result == {"name": "Matt", "address_street": "Boulevar", "address_number": 1}

    def test_short_names_fall_back_on_collision(self):
        """Last segment is used unless that name is already taken."""
        record = {"name": "Matt", "pet": {"name": "Rex"}}

        result = flatten_to_dict(flatten(record), use_path_as_name=False)

        assert result == {"name": "Matt", "pet_name": "Rex"}


class TestPaths:
    """Test coerce_path(), resolve() and assign()."""

    def test_coerce_path(self):
        assert coerce_path("name") == ("name",)
        assert coerce_path(["address", "street"]) == ("address", "street")
        assert coerce_path(("a", 0)) == ("a", 0)

    def test_coerce_empty_path_rejected(self):
        with pytest.raises(ValueError):
            coerce_path(())

    def test_resolve_missing_segment(self, person_record):
        with pytest.raises(PathNotFound) as exc_info:
            resolve(person_record, ("address", "zip"))

        assert exc_info.value.path == ("address", "zip")
        assert exc_info.value.segment == "zip"

    def test_resolve_does_not_enter_atomic_values(self):
        """Atomic values are opaque to paths."""
        record = {"address": AtomicValue({"street": "Main Road"})}

        with pytest.raises(PathNotFound):
            resolve(record, ("address", "street"))

    def test_resolve_does_not_enter_arrays(self):
        with pytest.raises(PathNotFound):
            resolve({"items": [1, 2]}, ("items", 0))

    def test_path_not_found_is_key_error(self, person_record):
        with pytest.raises(KeyError):
            resolve(person_record, ("missing",))

    def test_assign_is_copy_on_write(self, person_record):
        """Assign returns a new record and leaves the original untouched."""
        updated = assign(person_record, ("address", "number"), 2)

        assert updated["address"]["number"] == 2
        assert person_record["address"]["number"] == 1
        assert updated is not person_record
        assert updated["address"] is not person_record["address"]

    def test_assign_shares_untouched_siblings(self):
        record = {"a": {"x": 1}, "b": {"y": 2}}

        updated = assign(record, ("a", "x"), 5)

        assert updated["b"] is record["b"]

    def test_assign_frozen_dataclass(self):
        """Frozen dataclasses are rebuilt rather than mutated."""
        @dataclass(frozen=True)
        class Point:
            x: int = 0
            y: int = 0

        original = Point(1, 2)
        updated = assign(original, ("y",), 9)

        assert updated == Point(1, 9)
        assert original == Point(1, 2)


class TestAtomicWrapping:
    """Test wrap_atomic() and unwrap()."""

    def test_wrap_only_records(self):
        assert wrap_atomic(5) == 5
        assert wrap_atomic([1, 2]) == [1, 2]
        assert wrap_atomic({"a": 1}) == AtomicValue({"a": 1})

    def test_atomic_value_is_not_a_record(self):
        assert not is_record(AtomicValue({"a": 1}))
        assert is_record({"a": 1})
        assert not is_record(dict)

    def test_unwrap_nested(self):
        record = {"outer": {"inner": AtomicValue({"x": AtomicValue({"y": 1})})}}

        assert unwrap(record) == {"outer": {"inner": {"x": {"y": 1}}}}

    def test_unwrap_dataclass(self, person_dataclass):
        wrapped = assign(person_dataclass, ("address",), AtomicValue({"street": "Main Road"}))

        result = unwrap(wrapped)

        assert result.address == {"street": "Main Road"}
        assert result.name == "Matt"
