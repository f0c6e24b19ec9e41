"""
Field-level diff between two snapshots of an entity.

Change ordering is part of the contract: every key of ``old`` in its original
order first, then the keys that only exist in ``new``, in their original order.
History views render changes in this order.
"""
import math
from collections.abc import Mapping
from typing import Any, List, Optional

from pydantic_core import PydanticSerializationError, to_jsonable_python

from ordertrail.models.audit import FieldChange
from ordertrail.models.enums import ChangeType


class DiffError(ValueError):
    """Raised when a snapshot cannot be diffed or stored (cyclic or not JSON-representable)."""

    def __init__(self, message: str, field: Optional[str] = None):
        self.message = message
        self.field = field
        super().__init__(self.message)


def compute_changes(
    old: Optional[Mapping] = None,
    new: Optional[Mapping] = None
) -> List[FieldChange]:
    """
    Compute the ordered list of field changes turning ``old`` into ``new``.

    - added: field absent from old, present in new
    - removed: field present in old, absent from new
    - modified: present in both and not deep-equal
    Fields that are deep-equal in both snapshots produce nothing.
    """
    old = old or {}
    new = new or {}

    ensure_serializable(old)
    ensure_serializable(new)

    changes: List[FieldChange] = []
    for field, old_value in old.items():
        if field not in new:
            changes.append(FieldChange(
                field=field,
                old_value=old_value,
                new_value=None,
                change_type=ChangeType.REMOVED
            ))
        elif not deep_equal(old_value, new[field]):
            changes.append(FieldChange(
                field=field,
                old_value=old_value,
                new_value=new[field],
                change_type=ChangeType.MODIFIED
            ))

    for field, new_value in new.items():
        if field not in old:
            changes.append(FieldChange(
                field=field,
                old_value=None,
                new_value=new_value,
                change_type=ChangeType.ADDED
            ))

    return changes


def deep_equal(a: Any, b: Any) -> bool:
    """
    Structural equality for JSON-like values.

    Mappings compare by key set and values regardless of key order, lists and
    tuples element-wise. Scalars must agree on kind: ``1`` and ``"1"`` differ,
    ``True`` and ``1`` differ, ``1`` and ``1.0`` are the same number.
    """
    if isinstance(a, Mapping) or isinstance(b, Mapping):
        if not (isinstance(a, Mapping) and isinstance(b, Mapping)):
            return False
        if set(a.keys()) != set(b.keys()):
            return False
        return all(deep_equal(a[key], b[key]) for key in a)

    if isinstance(a, (list, tuple)) or isinstance(b, (list, tuple)):
        if not (isinstance(a, (list, tuple)) and isinstance(b, (list, tuple))):
            return False
        if len(a) != len(b):
            return False
        return all(deep_equal(x, y) for x, y in zip(a, b))

    if isinstance(a, bool) or isinstance(b, bool):
        return type(a) is type(b) and a == b

    if _is_number(a) and _is_number(b):
        # NaN is unchanged when both sides hold it
        return a == b or (_is_nan(a) and _is_nan(b))

    if type(a) is not type(b):
        return False
    return a == b


def ensure_acyclic(values: Optional[Mapping]) -> None:
    """Raise DiffError if any field value of the snapshot contains a cycle."""
    for field, value in (values or {}).items():
        _ensure_acyclic(value, field, ())


def ensure_serializable(values: Optional[Mapping], name: Optional[str] = None) -> None:
    """
    Raise DiffError unless every field value can be stored in the JSON log.

    Values go through the same pydantic serializer the log is saved with, so
    anything accepted here can be persisted later.
    """
    ensure_acyclic(values)
    for field, value in (values or {}).items():
        try:
            to_jsonable_python(value)
        except PydanticSerializationError as e:
            label = f"{name}.{field}" if name else field
            raise DiffError(
                f"Cannot store field '{label}': {type(value).__name__} is not JSON-representable",
                field=field
            ) from e


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_nan(value: Any) -> bool:
    return isinstance(value, float) and math.isnan(value)


def _ensure_acyclic(value: Any, field: str, path: tuple) -> None:
    # Only containers on the current path count; shared sub-objects are fine.
    if not isinstance(value, (Mapping, list, tuple)):
        return
    marker = id(value)
    if marker in path:
        raise DiffError(f"Cannot diff field '{field}': value contains a cycle", field=field)
    path = path + (marker,)
    children = value.values() if isinstance(value, Mapping) else value
    for child in children:
        _ensure_acyclic(child, field, path)
