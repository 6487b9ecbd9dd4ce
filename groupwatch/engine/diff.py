"""Compare a freshly computed HashMap against the stored baseline."""

import logging
from collections.abc import Iterable, Mapping

from .base import REASON_CHANGED, REASON_NEW, ChangeRecord, HashMap

logger = logging.getLogger(__name__)


def diff(
    old_map: HashMap,
    new_map: HashMap,
    order: Iterable[str] | None = None,
    check_business: bool = True,
    check_full: bool = True,
) -> list[ChangeRecord]:
    """
    Return one ChangeRecord per entity whose hashes differ from ``old_map``.

    Args:
        old_map: Baseline loaded from storage
        new_map: Hashes computed during this run
        order: Entity ids in the caller's listing order. Defaults to the
            insertion order of ``new_map``. Ids absent from ``new_map`` are skipped.
        check_business: Compare business hashes
        check_full: Compare full hashes

    Entities only present in ``old_map`` are not reported. With a check
    disabled, that projection never marks an existing entity as changed.
    """
    ids = list(order) if order is not None else list(new_map)
    records = []
    seen = set()

    for entity_id in ids:
        if entity_id in seen or entity_id not in new_map:
            continue
        seen.add(entity_id)

        new = new_map[entity_id]
        old = old_map.get(entity_id)
        if old is None:
            records.append(ChangeRecord(entity_id, True, True, REASON_NEW))
            continue

        business = check_business and new.business_hash != old.business_hash
        full = check_full and new.full_hash != old.full_hash
        if business or full:
            records.append(ChangeRecord(entity_id, business, full, REASON_CHANGED))

    return records


def describe_changes(records: Iterable[ChangeRecord], limit: int = 10) -> list[str]:
    """Short human-readable lines, e.g. ``"a@x.com (businessHash, fullHash)"``."""
    lines = []
    for record in records:
        if len(lines) >= limit:
            break
        if record.is_new:
            lines.append(f"{record.entity_id} (new)")
            continue
        tags = []
        if record.business:
            tags.append("businessHash")
        if record.full:
            tags.append("fullHash")
        lines.append(f"{record.entity_id} ({', '.join(tags)})")
    return lines


def log_hash_differences(records: list[ChangeRecord], limit: int = 10) -> None:
    if not records:
        logger.debug("No hash changes detected.")
        return
    for line in describe_changes(records, limit):
        logger.debug(f"  changed: {line}")
    if len(records) > limit:
        logger.debug(f"  ... and {len(records) - limit} more")


def changed_keys(old_settings: Mapping, new_settings: Mapping, tracked_keys: Iterable[str]) -> list[str]:
    """Tracked keys whose value differs between two settings objects."""
    return [
        key
        for key in tracked_keys
        if old_settings.get(key) != new_settings.get(key)
    ]
