"""
Tests for hash baseline and state persistence.
"""

import json
import shutil
import tempfile
from pathlib import Path
from unittest.mock import patch

import pytest

from groupwatch.engine.base import HashPair
from groupwatch.engine.storage import (
    DOMAIN_ETAGS,
    GROUP_EMAILS,
    GROUP_HASH_MAP,
    GROUP_SETTINGS_HASH_MAP,
    LAST_GROUP_SYNC,
    MemoryHashStore,
    StateHashStore,
    StateStore,
    StorageError,
)


@pytest.fixture
def temp_dir():
    d = tempfile.mkdtemp()
    yield d
    shutil.rmtree(d, ignore_errors=True)


@pytest.fixture
def state_path(temp_dir):
    return Path(temp_dir) / "_state" / "example.com.json"


SAMPLE_MAP = {
    "a@example.com": HashPair("bizA", "fullA"),
    "b@example.com": HashPair("bizB", "fullB"),
}


class TestMemoryHashStore:
    def test_empty_load(self):
        assert MemoryHashStore().load() == {}

    def test_round_trip(self):
        store = MemoryHashStore()
        store.save(SAMPLE_MAP)
        assert store.load() == SAMPLE_MAP

    def test_save_copies_map(self):
        store = MemoryHashStore()
        hash_map = dict(SAMPLE_MAP)
        store.save(hash_map)
        hash_map["c@example.com"] = HashPair("x", "y")
        assert "c@example.com" not in store.load()

    def test_save_replaces_whole_map(self):
        store = MemoryHashStore(SAMPLE_MAP)
        store.save({"c@example.com": HashPair("x", "y")})
        assert list(store.load()) == ["c@example.com"]


class TestStateStore:
    """Test the JSON key/value state file."""

    def test_missing_file_reads_defaults(self, state_path):
        state = StateStore(state_path)
        assert state.get("anything") is None
        assert state.get("anything", {}) == {}
        assert not state_path.exists()

    def test_values_survive_new_instance(self, state_path):
        StateStore(state_path).set(LAST_GROUP_SYNC, "2024-01-01T00:00:00")
        assert StateStore(state_path).get(LAST_GROUP_SYNC) == "2024-01-01T00:00:00"

    def test_values_are_json_encoded_individually(self, state_path):
        StateStore(state_path).set("K", {"a": 1})
        raw = json.loads(state_path.read_text())
        assert raw["K"] == '{"a": 1}'

    def test_quota_exceeded_raises_and_keeps_old_value(self, state_path):
        state = StateStore(state_path, max_value_bytes=20)
        state.set("K", "small")
        with pytest.raises(StorageError, match="quota"):
            state.set("K", "x" * 100)
        assert state.get("K") == "small"
        assert StateStore(state_path).get("K") == "small"

    def test_failed_write_keeps_old_value(self, state_path):
        state = StateStore(state_path)
        state.set("K", "old")
        with patch(
            "groupwatch.engine.storage.os.replace", side_effect=OSError("disk full")
        ):
            with pytest.raises(StorageError):
                state.set("K", "new")
            with pytest.raises(StorageError):
                state.delete("K")
        assert state.get("K") == "old"
        assert StateStore(state_path).get("K") == "old"
        assert [p.name for p in state_path.parent.iterdir()] == [state_path.name]

    def test_corrupt_file_raises(self, state_path):
        state_path.parent.mkdir(parents=True)
        state_path.write_text("{not json")
        with pytest.raises(StorageError):
            StateStore(state_path).get("K")

    def test_non_object_file_raises(self, state_path):
        state_path.parent.mkdir(parents=True)
        state_path.write_text("[1, 2]")
        with pytest.raises(StorageError):
            StateStore(state_path).get("K")

    def test_corrupt_value_raises(self, state_path):
        state_path.parent.mkdir(parents=True)
        state_path.write_text(json.dumps({"K": "{broken"}))
        with pytest.raises(StorageError):
            StateStore(state_path).get("K")

    def test_delete(self, state_path):
        state = StateStore(state_path)
        state.set("K", 1)
        state.delete("K")
        state.delete("never-set")
        assert StateStore(state_path).get("K") is None

    def test_clear_only_group_state(self, state_path):
        state = StateStore(state_path)
        state.set(GROUP_SETTINGS_HASH_MAP, {})
        state.set(GROUP_HASH_MAP, {})
        state.set("UNRELATED", "keep")
        state.clear()

        reloaded = StateStore(state_path)
        assert reloaded.get(GROUP_SETTINGS_HASH_MAP) is None
        assert reloaded.get(GROUP_HASH_MAP) is None
        assert reloaded.get("UNRELATED") == "keep"

    def test_etags(self, state_path):
        state = StateStore(state_path)
        assert state.get_etag(DOMAIN_ETAGS, "example.com") is None
        state.set_etag(DOMAIN_ETAGS, "example.com", '"v1"')
        state.set_etag(DOMAIN_ETAGS, "other.com", '"v2"')
        assert StateStore(state_path).get_etag(DOMAIN_ETAGS, "example.com") == '"v1"'
        assert StateStore(state_path).get(DOMAIN_ETAGS) == {
            "example.com": '"v1"',
            "other.com": '"v2"',
        }

    def test_group_emails(self, state_path):
        state = StateStore(state_path)
        state.save_group_emails(["a@example.com", {"email": "b@example.com", "name": "B"}, {}])
        assert state.get(GROUP_EMAILS) == [{"email": "a@example.com"}, {"email": "b@example.com"}]
        assert state.get_group_emails() == ["a@example.com", "b@example.com"]

    def test_group_emails_accepts_legacy_strings(self, state_path):
        state = StateStore(state_path)
        state.set(GROUP_EMAILS, ["a@example.com", {"email": "b@example.com"}, None])
        assert state.get_group_emails() == ["a@example.com", "b@example.com"]

    def test_group_emails_rejects_non_list(self, state_path):
        with pytest.raises(TypeError):
            StateStore(state_path).save_group_emails("a@example.com")

    def test_no_temp_files_left_behind(self, state_path):
        state = StateStore(state_path)
        for i in range(5):
            state.set(f"K{i}", i)
        assert [p.name for p in state_path.parent.iterdir()] == [state_path.name]


class TestStateHashStore:
    def test_empty_load(self, state_path):
        assert StateHashStore(StateStore(state_path)).load() == {}

    def test_round_trip_across_instances(self, state_path):
        StateHashStore(StateStore(state_path)).save(SAMPLE_MAP)
        assert StateHashStore(StateStore(state_path)).load() == SAMPLE_MAP

    def test_stored_as_camel_case_pairs(self, state_path):
        state = StateStore(state_path)
        StateHashStore(state).save(SAMPLE_MAP)
        assert state.get(GROUP_SETTINGS_HASH_MAP)["a@example.com"] == {
            "businessHash": "bizA",
            "fullHash": "fullA",
        }

    def test_separate_keys_do_not_collide(self, state_path):
        state = StateStore(state_path)
        StateHashStore(state, GROUP_HASH_MAP).save(SAMPLE_MAP)
        assert StateHashStore(state).load() == {}

    def test_malformed_map_raises(self, state_path):
        state = StateStore(state_path)
        state.set(GROUP_SETTINGS_HASH_MAP, {"a@example.com": "not-a-pair"})
        with pytest.raises(StorageError):
            StateHashStore(state).load()

    def test_quota_error_propagates(self, state_path):
        state = StateStore(state_path, max_value_bytes=10)
        with pytest.raises(StorageError):
            StateHashStore(state).save(SAMPLE_MAP)
