"""
Tests for the field-level diff.

These tests prove:
- Change order is old keys first, then keys only present in new
- Deep equality ignores mapping key order but not kinds of scalars
- Cyclic snapshots are rejected instead of recursing forever
"""
import pytest

from ordertrail.models.enums import ChangeType
from ordertrail.services.diff_engine import DiffError, compute_changes, deep_equal


class TestComputeChanges:
    """Classification and ordering of field changes."""

    def test_identical_snapshots_have_no_changes(self):
        snapshot = {"title": "Repair", "priority": 2, "tags": ["a", "b"]}
        assert compute_changes(snapshot, dict(snapshot)) == []

    def test_added_modified_removed(self):
        """Each field is classified once, with None on the missing side."""
        changes = compute_changes(
            {"title": "Repair", "notes": "old"},
            {"title": "Overhaul", "priority": 1}
        )

        assert [(c.field, c.change_type) for c in changes] == [
            ("title", ChangeType.MODIFIED),
            ("notes", ChangeType.REMOVED),
            ("priority", ChangeType.ADDED),
        ]
        assert changes[0].old_value == "Repair"
        assert changes[0].new_value == "Overhaul"
        assert changes[1].new_value is None
        assert changes[2].old_value is None

    def test_order_follows_old_then_new_only_keys(self):
        changes = compute_changes(
            {"b": 1, "a": 1, "c": 1},
            {"d": 2, "c": 2, "a": 2, "e": 2}
        )
        assert [c.field for c in changes] == ["b", "a", "c", "d", "e"]

    def test_missing_snapshot_treated_as_empty(self):
        """A None side means every field of the other side is added or removed."""
        added = compute_changes(None, {"title": "New"})
        removed = compute_changes({"title": "Old"}, None)

        assert [c.change_type for c in added] == [ChangeType.ADDED]
        assert [c.change_type for c in removed] == [ChangeType.REMOVED]

    def test_explicit_null_is_a_value(self):
        """A key present with None differs from an absent key."""
        changes = compute_changes({"notes": None}, {})
        assert len(changes) == 1
        assert changes[0].change_type == ChangeType.REMOVED

        changes = compute_changes({"notes": None}, {"notes": "hello"})
        assert changes[0].change_type == ChangeType.MODIFIED

    def test_nested_values_compared_structurally(self):
        old = {"address": {"city": "Recife", "zip": "50000"}}
        assert compute_changes(old, {"address": {"zip": "50000", "city": "Recife"}}) == []

        changes = compute_changes(old, {"address": {"city": "Natal", "zip": "50000"}})
        assert changes[0].field == "address"
        assert changes[0].change_type == ChangeType.MODIFIED

    def test_cyclic_snapshot_rejected(self):
        looped = {"name": "loop"}
        looped["self"] = looped

        with pytest.raises(DiffError) as exc_info:
            compute_changes({"data": looped}, {"data": {}})

        assert exc_info.value.field == "data"
        assert "cycle" in exc_info.value.message

    def test_non_json_value_rejected(self):
        """A value the audit log could not save is refused up front."""
        class Money:
            def __init__(self, cents):
                self.cents = cents

        with pytest.raises(DiffError) as exc_info:
            compute_changes({"total": 1}, {"total": Money(100)})

        assert exc_info.value.field == "total"
        assert "Money" in exc_info.value.message

    def test_nested_non_json_value_rejected(self):
        with pytest.raises(DiffError):
            compute_changes({"items": [{"price": object()}]}, {})

    def test_unchanged_nan_is_not_modified(self):
        assert compute_changes({"ratio": float("nan")}, {"ratio": float("nan")}) == []

    def test_shared_subobject_is_not_a_cycle(self):
        shared = {"id": 1}
        changes = compute_changes({"items": [shared, shared]}, {"items": [shared]})
        assert changes[0].change_type == ChangeType.MODIFIED


PAIRS = [
    ({}, {"title": "Pump", "stage_id": "s1"}),
    ({"title": "Pump", "priority": 1}, {"title": "Pump", "priority": 2}),
    ({"a": [1, 2], "b": {"x": 1}, "c": None}, {"b": {"x": 2}, "d": True}),
    ({"status": "pending", "notes": "n"}, {}),
]


class TestDiffProperties:
    """Properties that hold for any pair of snapshots."""

    @pytest.mark.parametrize("old,new", PAIRS)
    def test_changed_fields_come_from_either_snapshot(self, old, new):
        fields = [c.field for c in compute_changes(old, new)]
        assert set(fields) <= set(old) | set(new)
        assert len(fields) == len(set(fields))

    @pytest.mark.parametrize("old,new", PAIRS)
    def test_applying_changes_to_old_gives_new(self, old, new):
        rebuilt = dict(old)
        for change in compute_changes(old, new):
            if change.change_type == ChangeType.REMOVED:
                del rebuilt[change.field]
            else:
                rebuilt[change.field] = change.new_value
        assert deep_equal(rebuilt, new)


class TestDeepEqual:
    """Scalar kinds and container shapes."""

    def test_string_and_number_differ(self):
        assert not deep_equal(1, "1")

    def test_bool_and_int_differ(self):
        assert not deep_equal(True, 1)
        assert not deep_equal(0, False)
        assert deep_equal(True, True)

    def test_int_and_float_same_number(self):
        assert deep_equal(1, 1.0)

    def test_nan_equals_nan(self):
        assert deep_equal(float("nan"), float("nan"))
        assert not deep_equal(float("nan"), 1.0)

    def test_list_order_matters(self):
        assert not deep_equal([1, 2], [2, 1])
        assert deep_equal([1, 2], (1, 2))

    def test_mapping_against_scalar(self):
        assert not deep_equal({}, None)
        assert not deep_equal([], {})

    def test_mapping_key_sets_must_match(self):
        assert not deep_equal({"a": 1}, {"a": 1, "b": None})
