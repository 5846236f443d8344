"""
Path-based flattening of nested records.

A record is a nested structure of mappings and dataclass instances. Mappings
enumerate their items in insertion order, dataclasses their fields in
declaration order. Everything else (primitives, lists, tuples, sets, arbitrary
objects) is an atomic leaf, as is any record wrapped in AtomicValue by a
wholesale path write.

All helpers here are pure: assign() returns a new record and never touches
its input, so snapshots handed out earlier stay valid.
"""

from collections.abc import Mapping
from dataclasses import dataclass, fields as dataclass_fields, is_dataclass
from typing import Any, Dict, Hashable, Iterable, Iterator, List, Sequence, Tuple, Union
import copy

from trackedstate.errors import PathNotFound

PropertyPath = Tuple[Hashable, ...]
PathLike = Union[str, Sequence[Hashable]]


@dataclass(frozen=True)
class AtomicValue:
    """Marks a record assigned wholesale through a path write.

    Paths never descend into an AtomicValue, and the flattener reports it as a
    single leaf carrying the wrapped value.
    """
    value: Any


@dataclass(frozen=True)
class Leaf:
    """Smallest addressable unit of tracked state."""
    path: PropertyPath
    value: Any

    @property
    def name(self) -> Hashable:
        return self.path[-1]


def is_record(value: Any) -> bool:
    """True for values the flattener descends into."""
    if isinstance(value, AtomicValue):
        return False
    if isinstance(value, Mapping):
        return True
    return is_dataclass(value) and not isinstance(value, type)


def iter_children(record: Any) -> Iterator[Tuple[Hashable, Any]]:
    """Yield (key, value) pairs of a record in enumeration order."""
    if isinstance(record, Mapping):
        yield from record.items()
        return
    for f in dataclass_fields(record):
        # Bypass any attribute hooks on the dataclass
        yield f.name, object.__getattribute__(record, f.name)


def _has_child(record: Any, key: Hashable) -> bool:
    if isinstance(record, Mapping):
        return key in record
    return any(f.name == key for f in dataclass_fields(record))


def _get_child(record: Any, key: Hashable) -> Any:
    if isinstance(record, Mapping):
        return record[key]
    return object.__getattribute__(record, key)


def _with_child(record: Any, key: Hashable, child: Any) -> Any:
    if isinstance(record, Mapping):
        new_record = dict(record)
        new_record[key] = child
        return new_record
    new_record = copy.copy(record)
    # object.__setattr__ so frozen dataclasses can be rebuilt too
    object.__setattr__(new_record, key, child)
    return new_record


def coerce_path(path: PathLike) -> PropertyPath:
    """Normalize a path argument to a tuple of segments.

    A plain string is a single segment, any other sequence is taken segment by
    segment.
    """
    if isinstance(path, str):
        result: PropertyPath = (path,)
    else:
        result = tuple(path)
    if not result:
        raise ValueError("Property path must have at least one segment")
    return result


def flatten(record: Any, prefix: PropertyPath = ()) -> List[Leaf]:
    """Flatten a record into its ordered list of leaves.

    Recurses depth-first into nested records and stops at atomic values.
    An empty record (or empty nested record) contributes no leaves. Cyclic
    input is not detected.

    Args:
        record: Mapping or dataclass instance to flatten
        prefix: Path of ``record`` inside an enclosing record

    Returns:
        Leaves in key enumeration order.
    """
    leaves: List[Leaf] = []
    _flatten_into(record, prefix, leaves)
    return leaves


def _flatten_into(record: Any, prefix: PropertyPath, leaves: List[Leaf]) -> None:
    for key, value in iter_children(record):
        path = prefix + (key,)
        if isinstance(value, AtomicValue):
            leaves.append(Leaf(path, value.value))
        elif is_record(value):
            _flatten_into(value, path, leaves)
        else:
            leaves.append(Leaf(path, value))


def flatten_to_dict(leaves: Iterable[Leaf], use_path_as_name: bool = True) -> Dict[str, Any]:
    """Build a flat name -> value dict from leaves.

    Args:
        leaves: Leaves to collect
        use_path_as_name: Key every entry by its path joined with ``_``. When
            False the last segment is used, and the joined path only when that
            name is already taken.
    """
    result: Dict[str, Any] = {}
    for leaf in leaves:
        joined = '_'.join(str(segment) for segment in leaf.path)
        name = str(leaf.name)
        if use_path_as_name or name in result:
            result[joined] = leaf.value
            continue
        result[name] = leaf.value
    return result


def resolve(record: Any, path: PropertyPath) -> Any:
    """Return the raw value stored at ``path``.

    Raises:
        PathNotFound: A segment is missing, or an intermediate value is not a
            record (atomic values are opaque to paths).
    """
    node = record
    for segment in path:
        if not is_record(node) or not _has_child(node, segment):
            raise PathNotFound(path, segment)
        node = _get_child(node, segment)
    return node


def assign(record: Any, path: PropertyPath, value: Any) -> Any:
    """Copy-on-write assignment of ``value`` at ``path``.

    Every record on the path is copied, untouched siblings are shared.
    The caller must have validated the path with resolve() first.
    """
    key = path[0]
    if len(path) == 1:
        return _with_child(record, key, value)
    child = assign(_get_child(record, key), path[1:], value)
    return _with_child(record, key, child)


def wrap_atomic(value: Any) -> Any:
    """Wrap a record so later flattening treats it as one leaf."""
    if is_record(value):
        return AtomicValue(value)
    return value


def unwrap(value: Any) -> Any:
    """Strip AtomicValue wrappers recursively, returning plain data.

    Mappings come back as dicts and dataclasses as shallow copies with
    unwrapped fields. Other values are returned as they are.
    """
    if isinstance(value, AtomicValue):
        return unwrap(value.value)
    if isinstance(value, Mapping):
        return {key: unwrap(child) for key, child in value.items()}
    if is_record(value):
        result = copy.copy(value)
        for key, child in iter_children(value):
            object.__setattr__(result, key, unwrap(child))
        return result
    return value
