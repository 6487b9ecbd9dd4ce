"""Settings normalization and dual hashing for change detection.

Every settings object is reduced to two projections:

- business: only the tracked policy keys, missing keys marked explicitly
- full: everything except volatile fields such as the API's etag

Both are serialized as canonical JSON (sorted keys, compact separators)
so the digest is stable regardless of dict insertion order.
"""

import base64
import hashlib
import json
from collections.abc import Iterable, Mapping

from .base import HashMap, HashPair

# Fields that never count towards the full hash
DEFAULT_EXCLUDED_KEYS = frozenset({"etag"})

# Directory fields treated as business-relevant for per-group hashes
DIRECTORY_TRACKED_KEYS = ("email", "name", "description", "directMembersCount", "adminCreated")


class _Missing:
    """Marker for a tracked key absent from the settings object."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self):
        return "MISSING"


MISSING = _Missing()


def _encode_default(value):
    if value is MISSING:
        return {"$missing": True}
    raise TypeError(f"Object of type {type(value).__name__} is not hashable settings data")


def project_business(settings, tracked_keys: Iterable[str]) -> dict:
    """Project ``settings`` onto the tracked keys, sorted.

    A tracked key absent from ``settings`` maps to ``MISSING`` rather than
    ``None``, so dropping a key and nulling it hash differently.
    """
    if not isinstance(settings, Mapping) or not settings:
        return {}
    return {key: settings.get(key, MISSING) for key in sorted(set(tracked_keys))}


def project_full(settings, excluded_keys: Iterable[str] = DEFAULT_EXCLUDED_KEYS) -> dict:
    """Copy ``settings`` minus ``excluded_keys``, re-emitted in sorted key order."""
    if not isinstance(settings, Mapping) or not settings:
        return {}
    excluded = set(excluded_keys)
    return {key: settings[key] for key in sorted(settings) if key not in excluded}


def canonical_json(projection: Mapping) -> str:
    return json.dumps(
        projection,
        sort_keys=True,
        ensure_ascii=False,
        separators=(",", ":"),
        default=_encode_default,
    )


def compute_hash(projection: Mapping, algorithm: str = "sha1") -> str:
    """Base64 digest of the canonical JSON form of ``projection``."""
    digest = hashlib.new(algorithm, canonical_json(projection).encode("utf-8")).digest()
    return base64.b64encode(digest).decode("ascii")


def compute_hash_pair(
    settings,
    tracked_keys: Iterable[str],
    excluded_keys: Iterable[str] = DEFAULT_EXCLUDED_KEYS,
) -> HashPair:
    return HashPair(
        business_hash=compute_hash(project_business(settings, tracked_keys)),
        full_hash=compute_hash(project_full(settings, excluded_keys)),
    )


def compute_hash_map(
    entries: Iterable[dict],
    tracked_keys: Iterable[str],
    excluded_keys: Iterable[str] = DEFAULT_EXCLUDED_KEYS,
) -> HashMap:
    """Build entity id -> HashPair for every entry carrying settings.

    Entries are ``{"email": ..., "settings": {...}}`` dicts; ones without an
    email or settings are skipped.
    """
    tracked = list(tracked_keys)
    excluded = list(excluded_keys)
    hash_map: HashMap = {}
    for entry in entries:
        email = entry.get("email")
        settings = entry.get("settings")
        if email and settings:
            hash_map[email] = compute_hash_pair(settings, tracked, excluded)
    return hash_map


def hash_group_list(groups: Iterable[Mapping]) -> str:
    """MD5 hex digest of a directory listing, independent of listing order."""
    simplified = [
        {
            "email": g.get("email"),
            "name": g.get("name"),
            "description": g.get("description"),
            "directMembersCount": g.get("directMembersCount") or 0,
            "adminCreated": g.get("adminCreated") or False,
        }
        for g in groups
    ]
    simplified.sort(key=lambda g: g["email"] or "")
    canonical = json.dumps(simplified, sort_keys=True, ensure_ascii=False)
    return hashlib.md5(canonical.encode("utf-8")).hexdigest()
