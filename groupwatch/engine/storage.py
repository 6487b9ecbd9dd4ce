"""
Persistence for hash baselines, ETags and other run state.

The engine only depends on the HashStore interface:

    store.load()     -> HashMap ({} when nothing was stored yet)
    store.save(map)  -> replaces the whole stored map

StateStore is a small JSON key/value file (one per data dir) that plays the
role of a script properties blob. Values are JSON-encoded individually so a
per-value size quota can be enforced the same way the hosted store does.
"""

import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path

from .base import HashMap, HashPair

logger = logging.getLogger(__name__)

# Well-known state keys
GROUP_SETTINGS_HASH_MAP = "GROUP_SETTINGS_HASH_MAP"
GROUP_HASH_MAP = "GROUP_HASH_MAP"
GROUP_EMAILS = "GROUP_EMAILS"
GROUP_LIST_HASH = "GROUP_NORMALIZED_DATA_HASH"
DOMAIN_ETAGS = "DOMAIN_ETAGS"
GROUP_ETAGS = "GROUP_ETAGS"
SETTINGS_ETAGS = "SETTINGS_ETAGS"
LAST_GROUP_SYNC = "LAST_GROUP_SYNC"

# Everything a clean run forgets
GROUP_STATE_KEYS = (
    GROUP_SETTINGS_HASH_MAP,
    GROUP_HASH_MAP,
    GROUP_EMAILS,
    GROUP_LIST_HASH,
    DOMAIN_ETAGS,
    GROUP_ETAGS,
    SETTINGS_ETAGS,
    LAST_GROUP_SYNC,
)


class StorageError(RuntimeError):
    """Raised when state cannot be read or written (I/O, corruption, quota)."""

    pass


class HashStore(ABC):
    """Load/save the HashMap baseline between runs."""

    @abstractmethod
    def load(self) -> HashMap:
        raise NotImplementedError

    @abstractmethod
    def save(self, hash_map: HashMap) -> None:
        raise NotImplementedError


class MemoryHashStore(HashStore):
    """In-process store; save() keeps a copy so callers can't mutate the baseline."""

    def __init__(self, initial: HashMap | None = None):
        self._map: HashMap = dict(initial or {})

    def load(self) -> HashMap:
        return dict(self._map)

    def save(self, hash_map: HashMap) -> None:
        self._map = dict(hash_map)


class StateStore:
    """
    JSON file key/value store.

    Loaded once on first access and flushed atomically (temp file + rename)
    on every write, so a concurrent reader sees either the old or the new file.

    Usage:
        state = StateStore('data/_state/state.json', max_value_bytes=9216)
        state.set('LAST_GROUP_SYNC', '2024-01-01T00:00:00')
        state.get('LAST_GROUP_SYNC')
    """

    def __init__(self, path: str | Path, max_value_bytes: int | None = None):
        self.path = Path(path)
        self.max_value_bytes = max_value_bytes
        self._data: dict[str, str] | None = None

    def _load(self) -> dict[str, str]:
        if self._data is not None:
            return self._data

        if not self.path.exists():
            self._data = {}
            return self._data

        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise StorageError(f"Could not read state file {self.path}: {e}") from e
        if not isinstance(raw, dict):
            raise StorageError(f"State file {self.path} does not hold an object")

        self._data = raw
        logger.debug(f"Loaded {len(raw)} state keys from {self.path}")
        return self._data

    def _flush(self, data: dict[str, str]) -> None:
        """Write ``data`` to disk, then make it the in-memory view."""
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=".state-", suffix=".json")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(data, f, sort_keys=True)
                os.replace(tmp, self.path)
            except BaseException:
                Path(tmp).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise StorageError(f"Could not write state file {self.path}: {e}") from e
        self._data = data

    def get(self, key: str, default=None):
        raw = self._load().get(key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            raise StorageError(f"Corrupt value for state key {key}: {e}") from e

    def set(self, key: str, value) -> None:
        encoded = json.dumps(value, sort_keys=True)
        size = len(encoded.encode("utf-8"))
        if self.max_value_bytes is not None and size > self.max_value_bytes:
            raise StorageError(
                f"Value for {key} is {size} bytes, over the "
                f"{self.max_value_bytes} byte quota"
            )
        data = dict(self._load())
        data[key] = encoded
        self._flush(data)
        logger.debug(f"Stored {key} ({size} bytes)")

    def delete(self, key: str) -> None:
        data = dict(self._load())
        if data.pop(key, None) is not None:
            self._flush(data)
            logger.debug(f"Deleted state key {key}")

    def clear(self, keys=GROUP_STATE_KEYS) -> None:
        data = dict(self._load())
        removed = [k for k in keys if data.pop(k, None) is not None]
        if removed:
            self._flush(data)
        logger.info(f"Cleared {len(removed)} state keys")

    # --- ETags ---

    def get_etag(self, map_key: str, entity: str) -> str | None:
        return self.get(map_key, {}).get(entity)

    def set_etag(self, map_key: str, entity: str, etag: str) -> None:
        etags = self.get(map_key, {})
        etags[entity] = etag
        self.set(map_key, etags)
        logger.debug(f"Updated {map_key} for {entity}: {etag}")

    # --- Group emails ---

    def get_group_emails(self) -> list[str]:
        stored = self.get(GROUP_EMAILS, [])
        if not isinstance(stored, list):
            return []
        emails = []
        for entry in stored:
            email = entry if isinstance(entry, str) else (entry or {}).get("email")
            if email:
                emails.append(email)
        return emails

    def save_group_emails(self, groups: list) -> None:
        if not isinstance(groups, list):
            raise TypeError("save_group_emails expects a list")
        formatted = []
        for g in groups:
            if isinstance(g, str):
                formatted.append({"email": g})
            elif isinstance(g, dict) and g.get("email"):
                formatted.append({"email": g["email"]})
        self.set(GROUP_EMAILS, formatted)
        logger.debug(f"Saved {len(formatted)} group emails")


class StateHashStore(HashStore):
    """HashStore persisted under one key of a StateStore."""

    def __init__(self, state: StateStore, key: str = GROUP_SETTINGS_HASH_MAP):
        self.state = state
        self.key = key

    def load(self) -> HashMap:
        raw = self.state.get(self.key)
        if not raw:
            logger.debug(f"No {self.key} stored yet")
            return {}
        if not isinstance(raw, dict) or not all(isinstance(p, dict) for p in raw.values()):
            raise StorageError(f"{self.key} is not a mapping of hash pairs")
        return {email: HashPair.from_dict(pair) for email, pair in raw.items()}

    def save(self, hash_map: HashMap) -> None:
        self.state.set(self.key, {email: pair.to_dict() for email, pair in hash_map.items()})
        logger.debug(f"Stored {self.key} ({len(hash_map)} entries)")
