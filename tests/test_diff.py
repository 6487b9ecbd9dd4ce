"""
Tests for hash map diffing.
"""

import copy
import logging

from groupwatch.engine.base import REASON_CHANGED, REASON_NEW, ChangeRecord, HashPair
from groupwatch.engine.diff import changed_keys, describe_changes, diff, log_hash_differences


def _map(**pairs):
    return {
        f"{name}@example.com": HashPair(business, full)
        for name, (business, full) in pairs.items()
    }


class TestDiff:
    """Test the diff function."""

    def test_empty_baseline_marks_everything_new(self):
        new_map = _map(a=("b1", "f1"), b=("b2", "f2"))
        records = diff({}, new_map)
        assert [r.entity_id for r in records] == ["a@example.com", "b@example.com"]
        assert all(r.reason == REASON_NEW and r.business and r.full for r in records)

    def test_same_map_has_no_changes(self):
        m = _map(a=("b1", "f1"), b=("b2", "f2"))
        assert diff(m, m) == []

    def test_deep_copy_has_no_changes(self):
        m = _map(a=("b1", "f1"))
        assert diff(m, copy.deepcopy(m)) == []

    def test_business_and_full_are_independent(self):
        old = _map(a=("b1", "f1"), b=("b2", "f2"))
        new = _map(a=("b1", "f1-changed"), b=("b2-changed", "f2"))
        records = {r.entity_id: r for r in diff(old, new)}

        assert records["a@example.com"] == ChangeRecord("a@example.com", False, True, REASON_CHANGED)
        assert records["b@example.com"] == ChangeRecord("b@example.com", True, False, REASON_CHANGED)

    def test_removed_entities_not_reported(self):
        old = _map(a=("b1", "f1"), gone=("b9", "f9"))
        new = _map(a=("b1", "f1"))
        assert diff(old, new) == []

    def test_caller_order_is_respected(self):
        new = _map(a=("b1", "f1"), b=("b2", "f2"), c=("b3", "f3"))
        order = ["c@example.com", "a@example.com", "b@example.com"]
        assert [r.entity_id for r in diff({}, new, order=order)] == order

    def test_order_skips_unknown_and_duplicate_ids(self):
        new = _map(a=("b1", "f1"))
        order = ["missing@example.com", "a@example.com", "a@example.com"]
        records = diff({}, new, order=order)
        assert [r.entity_id for r in records] == ["a@example.com"]

    def test_disabled_business_check(self):
        old = _map(a=("b1", "f1"))
        new = _map(a=("b1-changed", "f1"))
        assert diff(old, new, check_business=False) == []

    def test_disabled_full_check(self):
        old = _map(a=("b1", "f1"))
        new = _map(a=("b1", "f1-changed"))
        assert diff(old, new, check_full=False) == []

    def test_new_entities_reported_even_with_checks_disabled(self):
        records = diff({}, _map(a=("b1", "f1")), check_business=False, check_full=False)
        assert len(records) == 1
        assert records[0].is_new


class TestDescribeChanges:
    def test_tags(self):
        records = [
            ChangeRecord("new@example.com", True, True, REASON_NEW),
            ChangeRecord("both@example.com", True, True),
            ChangeRecord("full@example.com", False, True),
        ]
        assert describe_changes(records) == [
            "new@example.com (new)",
            "both@example.com (businessHash, fullHash)",
            "full@example.com (fullHash)",
        ]

    def test_limit(self):
        records = [ChangeRecord(f"g{i}@example.com", True, False) for i in range(25)]
        assert len(describe_changes(records)) == 10
        assert len(describe_changes(records, limit=3)) == 3

    def test_log_hash_differences(self, caplog):
        records = [ChangeRecord(f"g{i}@example.com", True, False) for i in range(12)]
        with caplog.at_level(logging.DEBUG, logger="groupwatch.engine.diff"):
            log_hash_differences(records)
        assert "g0@example.com (businessHash)" in caplog.text
        assert "and 2 more" in caplog.text


class TestChangedKeys:
    def test_only_tracked_keys_compared(self):
        old = {"whoCanJoin": "ALL", "other": 1}
        new = {"whoCanJoin": "ANY", "other": 2}
        assert changed_keys(old, new, ["whoCanJoin"]) == ["whoCanJoin"]

    def test_missing_equals_none(self):
        assert changed_keys({}, {"whoCanJoin": None}, ["whoCanJoin"]) == []
