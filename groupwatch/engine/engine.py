"""
Sync pipelines: fetch -> normalize -> hash -> diff -> persist -> report.

One parameterized pipeline per API (directory listing, group settings) plus
the write-back of policy fixes. Zero source-specific code; everything
source-related comes through SourceDefinition.

Runs are single-threaded and assume they are the only writer of the state
store for their duration.
"""

import json
import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable

from tqdm import tqdm

from .base import ChangeRecord, ExecutionOptions, SourceDefinition
from .database import (
    ACTIVITY_LOG,
    DETAIL_REPORT,
    DISCREPANCIES,
    GROUP_LIST,
    GROUP_METADATA,
    SETTINGS_METADATA,
    SUMMARY_REPORT,
    UPDATE_LOG,
    ReportWriter,
)
from .diff import changed_keys, diff, log_hash_differences
from .hash import (
    DEFAULT_EXCLUDED_KEYS,
    DIRECTORY_TRACKED_KEYS,
    compute_hash_map,
    compute_hash_pair,
    hash_group_list,
)
from .storage import (
    DOMAIN_ETAGS,
    GROUP_ETAGS,
    GROUP_HASH_MAP,
    GROUP_LIST_HASH,
    GROUP_SETTINGS_HASH_MAP,
    GROUP_STATE_KEYS,
    LAST_GROUP_SYNC,
    SETTINGS_ETAGS,
    StateHashStore,
    StateStore,
)

__all__ = [
    "RateLimiter",
    "SettingsRunResult",
    "build_update_payloads",
    "filter_groups",
    "find_violations",
    "run_apply_updates",
    "run_group_settings",
    "run_list_groups",
]

logger = logging.getLogger(__name__)

NOT_FOUND = "Not Found"


# --- Rate Limiter ---


class RateLimiter:
    """
    Minimum-interval rate limiter for API calls.

    The pipelines are sequential, so this only spaces requests out; the lock
    keeps the stats consistent if a client is shared across threads.
    """

    def __init__(self, requests_per_second=5):
        self.min_interval = 1.0 / requests_per_second if requests_per_second > 0 else 0
        self.last_request_time = 0
        self.lock = threading.Lock()
        self.total_requests = 0
        self.total_wait_time = 0.0

    @contextmanager
    def acquire(self):
        wait = 0
        with self.lock:
            now = time.time()
            if self.min_interval > 0:
                elapsed = now - self.last_request_time
                if elapsed < self.min_interval:
                    wait = self.min_interval - elapsed
            self.last_request_time = now + wait
            self.total_requests += 1
        if wait > 0:
            time.sleep(wait)
            with self.lock:
                self.total_wait_time += wait
        yield

    def get_stats(self):
        with self.lock:
            avg_wait = (
                self.total_wait_time / self.total_requests
                if self.total_requests > 0
                else 0
            )
            return {
                "total_requests": self.total_requests,
                "total_wait_time": self.total_wait_time,
                "avg_wait_time": avg_wait,
            }


# --- Helpers ---


def filter_groups(
    groups: list[dict],
    whitelist: Iterable[str] | None = None,
    blacklist: Iterable[str] | None = None,
) -> list[dict]:
    """
    Keep groups whose "email name" matches the whitelist and not the blacklist.

    Matching is a case-insensitive substring test. An empty whitelist admits
    everything; the blacklist always wins.
    """
    white = [t.lower() for t in (whitelist or []) if t]
    black = [t.lower() for t in (blacklist or []) if t]

    kept = []
    for group in groups:
        target = f"{group.get('email') or ''} {group.get('name') or ''}".lower()
        if any(term in target for term in black):
            continue
        if white and not any(term in target for term in white):
            continue
        kept.append(group)
    return kept


def _now() -> str:
    return datetime.now().isoformat()


def _log_activity(
    writer: ReportWriter,
    options: ExecutionOptions,
    source: str,
    entity_type: str,
    entity_id: str,
    action: str,
    ref: str = "",
    details: str = "",
) -> None:
    if options.dry_run:
        logger.info(f"[DRY RUN] activity: {entity_type} {entity_id} {action} {details}")
        return
    writer.append_table(
        ACTIVITY_LOG,
        [
            {
                "timestamp": _now(),
                "source": source,
                "entity_type": entity_type,
                "entity_id": entity_id,
                "action": action,
                "ref": ref or "",
                "details": details or "",
            }
        ],
    )


def _metadata_rows(emails, new_map, old_map, old_etags, new_etags, changed_ids, now):
    rows = []
    for email in emails:
        new = new_map.get(email)
        if new is None:
            continue
        old = old_map.get(email)
        rows.append(
            {
                "email": email,
                "new_business_hash": new.business_hash,
                "new_full_hash": new.full_hash,
                "old_business_hash": old.business_hash if old else "",
                "old_full_hash": old.full_hash if old else "",
                "old_etag": old_etags.get(email) or "",
                "new_etag": new_etags.get(email) or "",
                "last_modified": now if email in changed_ids else "",
            }
        )
    return rows


def _fallback_metadata_rows(state: StateStore) -> list[dict]:
    """Metadata rebuilt from stored hashes when nothing was fetched."""
    stored = StateHashStore(state, GROUP_HASH_MAP).load()
    rows = []
    for email in state.get_group_emails():
        pair = stored.get(email)
        rows.append(
            {
                "email": email,
                "new_business_hash": pair.business_hash if pair else "",
                "new_full_hash": pair.full_hash if pair else "",
                "old_business_hash": "",
                "old_full_hash": "",
                "old_etag": "",
                "new_etag": "",
                "last_modified": "",
            }
        )
    return rows


# --- Directory listing ---


def run_list_groups(
    domain: str,
    source: SourceDefinition,
    state: StateStore,
    writer: ReportWriter,
    options: ExecutionOptions | None = None,
    whitelist: Iterable[str] | None = None,
    blacklist: Iterable[str] | None = None,
) -> list[dict]:
    """
    Fetch the domain's group list and record what changed.

    Returns the normalized groups of this run. When the stored domain ETag
    still matches (HTTP 304) or in manual mode, returns the stored group
    emails as ``{"email": ...}`` dicts instead.
    """
    options = options or ExecutionOptions()
    start_time = time.time()

    if options.clean_run:
        if options.dry_run:
            logger.info("[DRY RUN] clean run would clear stored group state")
        else:
            logger.info("Clean run: clearing stored group state")
            state.clear(GROUP_STATE_KEYS)

    if options.manual:
        logger.info(f"Manual mode: skipping directory fetch for {domain}")
        rows = _fallback_metadata_rows(state)
        if not options.dry_run:
            writer.replace_table(GROUP_METADATA, rows)
        return [{"email": e} for e in state.get_group_emails()]

    old_domain_etag = None if options.bypass_etag else state.get_etag(DOMAIN_ETAGS, domain)
    listing = source.list_groups_fn(domain, old_domain_etag)

    if listing is None:
        logger.info(f"No changes for {domain}: domain ETag matched")
        return [{"email": e} for e in state.get_group_emails()]

    if not options.bypass_etag and listing.etag:
        if old_domain_etag and old_domain_etag != listing.etag:
            _log_activity(
                writer, options, source.source_key, "domain", domain,
                "ETag Changed", listing.etag, f"{old_domain_etag} -> {listing.etag}",
            )

    raw_groups = filter_groups(listing.groups, whitelist, blacklist)
    if len(raw_groups) != len(listing.groups):
        logger.info(f"Filtered {len(listing.groups)} groups down to {len(raw_groups)}")

    groups = [source.normalize_fn(g) for g in raw_groups]
    if not groups:
        logger.warning(f"No groups retrieved for {domain}")
        return []

    emails = [g["email"] for g in groups]
    logger.info(f"Fetched {len(groups)} groups for {domain}")

    list_hash = hash_group_list(groups)
    list_changed = list_hash != state.get(GROUP_LIST_HASH)

    hash_store = StateHashStore(state, GROUP_HASH_MAP)
    old_map = hash_store.load()
    new_map = {
        g["email"]: compute_hash_pair(g, DIRECTORY_TRACKED_KEYS, DEFAULT_EXCLUDED_KEYS)
        for g in raw_groups
        if g.get("email")
    }
    records = diff(
        old_map,
        new_map,
        order=emails,
        check_business=options.check_business_hash,
        check_full=options.check_full_hash,
    )
    log_hash_differences(records)

    old_etags = state.get(GROUP_ETAGS, {})
    new_etags = {g["email"]: g.get("etag") for g in groups}
    now = _now()

    if not list_changed and not records and not options.bypass_etag:
        logger.info("Group list unchanged: skipping report write")
    elif options.dry_run:
        logger.info(f"[DRY RUN] would write {len(groups)} groups ({len(records)} changed)")
    else:
        writer.replace_table(
            GROUP_LIST,
            [
                {
                    "email": g["email"],
                    "name": g.get("name") or "",
                    "description": g.get("description") or "",
                    "direct_members_count": int(g.get("directMembersCount") or 0),
                    "admin_created": bool(g.get("adminCreated")),
                    "last_modified": now,
                }
                for g in groups
            ],
        )
        changed_ids = {r.entity_id for r in records}
        writer.replace_table(
            GROUP_METADATA,
            _metadata_rows(emails, new_map, old_map, old_etags, new_etags, changed_ids, now),
        )

    if not options.dry_run:
        state.save_group_emails(groups)
        state.set(GROUP_LIST_HASH, list_hash)
        hash_store.save(new_map)
        state.set(GROUP_ETAGS, new_etags)
        state.set(LAST_GROUP_SYNC, now)
        # Domain ETag goes last: it may only match a fully stored baseline
        if not options.bypass_etag and listing.etag:
            state.set_etag(DOMAIN_ETAGS, domain, listing.etag)

    _log_activity(
        writer, options, source.source_key, "group list", "all groups",
        "Fetched & Updated" if list_changed else "No Change", list_hash,
        f"Fetched {len(groups)} groups ({len(records)} hash changes)",
    )

    logger.info(f"listGroups completed in {time.time() - start_time:.2f}s")
    return groups


# --- Group settings ---


@dataclass
class SettingsRunResult:
    """Outcome of one run_group_settings call."""

    all: list[dict] = field(default_factory=list)
    changed: list[dict] = field(default_factory=list)
    unchanged: list[dict] = field(default_factory=list)
    errored: list[dict] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    records: list[ChangeRecord] = field(default_factory=list)
    violations: list[dict] = field(default_factory=list)


def find_violations(
    entries: Iterable[dict],
    expected_settings: dict,
    preview_limit: int = 3,
    excluded_keys: Iterable[str] = DEFAULT_EXCLUDED_KEYS,
) -> tuple[list[dict], list[str]]:
    """
    Compare each entry's settings with the expected policy.

    Returns (violations, preview) where violations holds one row per
    non-compliant key and preview the first few as readable lines.
    """
    now = _now()
    tracked = list(expected_settings)
    violations = []

    for entry in entries:
        email = entry.get("email")
        settings = entry.get("settings")
        if not email or not settings or entry.get("error"):
            continue

        business_hash = compute_hash_pair(settings, tracked, excluded_keys).business_hash
        for key, expected in expected_settings.items():
            actual = settings.get(key)
            if actual != expected:
                violations.append(
                    {
                        "email": email,
                        "key": key,
                        "expected": expected,
                        "actual": NOT_FOUND if actual is None else actual,
                        "hash": business_hash,
                        "last_modified": now,
                        "apply": True,
                    }
                )

    preview = [
        f"{v['email']} - {v['key']}: {v['actual']} -> {v['expected']}"
        for v in violations[:preview_limit]
    ]
    return violations, preview


def _violation_reports(violations: list[dict]) -> tuple[list[dict], list[dict], list[dict]]:
    """Split violations into detail (per group), summary and discrepancy rows."""
    by_email: dict[str, list[dict]] = {}
    for v in violations:
        by_email.setdefault(v["email"], []).append(v)

    detail, summary = [], []
    for email, items in by_email.items():
        detail.append(
            {
                "email": email,
                "expected": json.dumps({v["key"]: v["expected"] for v in items}, sort_keys=True),
                "actual": json.dumps({v["key"]: v["actual"] for v in items}, sort_keys=True),
                "hash": items[0]["hash"],
                "last_modified": items[0]["last_modified"],
            }
        )
        summary.append(
            {
                "email": email,
                "violations": len(items),
                "violated_keys": ", ".join(v["key"] for v in items),
                "last_modified": items[0]["last_modified"],
            }
        )

    discrepancies = [
        {
            "email": v["email"],
            "key": v["key"],
            # Settings values are mixed scalars; store them as JSON text
            "expected": json.dumps(v["expected"]),
            "actual": json.dumps(v["actual"]),
            "apply": v["apply"],
            "last_modified": v["last_modified"],
        }
        for v in violations
    ]
    return detail, summary, discrepancies


def run_group_settings(
    emails: list[str],
    source: SourceDefinition,
    state: StateStore,
    writer: ReportWriter,
    expected_settings: dict,
    options: ExecutionOptions | None = None,
    excluded_keys: Iterable[str] = DEFAULT_EXCLUDED_KEYS,
) -> SettingsRunResult:
    """
    Fetch settings for each group, detect hash changes and check the policy.

    Hash comparison and violation checking are independent: every fetched
    group is checked against ``expected_settings``, changed or not. The
    stored hash baseline is replaced as a whole at the end of the run.
    """
    options = options or ExecutionOptions()
    result = SettingsRunResult()
    tracked = list(expected_settings)
    excluded = list(excluded_keys)
    start_time = time.time()

    logger.debug(f"run_group_settings options: {options.as_dict()}")

    if options.clean_run and not options.dry_run:
        logger.info(f"Clean run: deleting {GROUP_SETTINGS_HASH_MAP}")
        state.delete(GROUP_SETTINGS_HASH_MAP)

    if not emails:
        logger.error("No group emails resolved: skipping group settings check")
        return result

    if options.manual:
        logger.info(f"Manual mode: skipping settings fetch for {len(emails)} groups")
        result.all = [{"email": e, "manual": True} for e in emails]
        result.unchanged = list(result.all)
        return result

    pbar = (
        tqdm(total=len(emails), desc="Group settings", unit="group")
        if options.show_progress
        else None
    )
    try:
        for email in emails:
            try:
                settings = source.get_settings_fn(email)
                result.all.append({"email": email, "settings": settings})
            except source.invalid_entry_exception:
                logger.warning(f"Group {email} not found, skipping")
                result.skipped.append(email)
            except Exception as e:
                logger.error(f"Failed to fetch settings for {email}: {e}")
                entry = {"email": email, "error": str(e)}
                result.all.append(entry)
                result.errored.append(entry)

            if pbar:
                pbar.update(1)
                pbar.set_postfix(errors=len(result.errored))
    finally:
        if pbar:
            pbar.close()

    fetched = [e for e in result.all if e.get("settings")]

    hash_store = StateHashStore(state, GROUP_SETTINGS_HASH_MAP)
    old_map = hash_store.load()
    new_map = compute_hash_map(fetched, tracked, excluded)
    result.records = diff(
        old_map,
        new_map,
        order=emails,
        check_business=options.check_business_hash,
        check_full=options.check_full_hash,
    )
    log_hash_differences(result.records)

    changed_ids = {r.entity_id for r in result.records}
    for entry in fetched:
        if entry["email"] in changed_ids:
            entry["hashes"] = new_map[entry["email"]]
            result.changed.append(entry)
        else:
            entry["unchanged"] = True
            result.unchanged.append(entry)

    if not changed_ids:
        logger.info("No hash changes detected; checking for setting violations anyway")

    result.violations, preview = find_violations(fetched, expected_settings, excluded_keys=excluded)
    logger.info(f"Violations found: {len(result.violations)}")
    for line in preview:
        logger.debug(f"  {line}")

    old_etags = state.get(SETTINGS_ETAGS, {})
    new_etags = {e["email"]: e["settings"].get("etag") for e in fetched}
    now = _now()

    if options.dry_run:
        logger.info("[DRY RUN] hash baseline and reports not written")
    else:
        hash_store.save(new_map)
        state.set(SETTINGS_ETAGS, new_etags)

        writer.replace_table(
            SETTINGS_METADATA,
            _metadata_rows(emails, new_map, old_map, old_etags, new_etags, changed_ids, now),
        )
        detail, summary, discrepancies = _violation_reports(result.violations)
        writer.replace_table(DETAIL_REPORT, detail)
        writer.replace_table(SUMMARY_REPORT, summary)
        writer.replace_table(DISCREPANCIES, discrepancies)

    _log_activity(
        writer, options, source.source_key, "group settings", "GroupSettings",
        "Hash Comparison", "", f"{len(changed_ids)} group(s) with changed hashes",
    )

    elapsed = time.time() - start_time
    logger.info("=" * 50)
    logger.info(f"SETTINGS CHECK COMPLETE: {len(emails)} groups")
    logger.info(
        f"Changed: {len(result.changed)} | Unchanged: {len(result.unchanged)} | "
        f"Errors: {len(result.errored)} | Skipped: {len(result.skipped)}"
    )
    logger.info(f"Violations: {len(result.violations)} | Elapsed: {elapsed:.2f}s")
    logger.info("=" * 50)

    if result.errored:
        logger.error(f"{len(result.errored)} groups could not be processed")

    return result


# --- Write-back ---


def build_update_payloads(discrepancies: Iterable[dict]) -> dict[str, dict]:
    """
    Group apply-flagged discrepancy rows into one PATCH payload per group.

    Rows are discrepancies report rows with ``expected`` as JSON text; rows
    whose text does not decode are skipped.
    """
    updates: dict[str, dict] = {}
    for row in discrepancies:
        email, key, expected = row.get("email"), row.get("key"), row.get("expected")
        if not email or not key or expected is None or not row.get("apply", True):
            continue
        try:
            expected = json.loads(expected)
        except (TypeError, json.JSONDecodeError):
            logger.warning(f"Skipping {email} {key}: expected value is not JSON text")
            continue
        updates.setdefault(email, {})[key] = expected
    return updates


def run_apply_updates(
    source: SourceDefinition,
    writer: ReportWriter,
    options: ExecutionOptions | None = None,
    discrepancies: list[dict] | None = None,
) -> list[dict]:
    """
    Patch every group listed in the discrepancies report back to policy.

    ``discrepancies`` defaults to the stored report; when given, rows must
    have the same shape (``expected`` as JSON text).

    Returns one result dict per group. Failures are recorded, not raised.
    """
    options = options or ExecutionOptions()
    if discrepancies is None:
        discrepancies = writer.read_table(DISCREPANCIES)

    updates = build_update_payloads(discrepancies)
    if not updates:
        logger.info("No discrepancies found: nothing to update")
        return []

    total = len(updates)
    logger.info(f"Preparing to update {total} group(s)")
    results = []

    for i, (email, payload) in enumerate(updates.items(), start=1):
        keys = sorted(payload)
        if options.dry_run:
            logger.info(f"[DRY RUN] [{i}/{total}] would update {email}: {', '.join(keys)}")
            continue

        logger.debug(f"[{i}/{total}] Updating {email}")
        try:
            updated = source.patch_settings_fn(email, payload)
            not_applied = changed_keys(payload, updated or {}, keys)
            success = not not_applied
            if success:
                logger.info(f"[{i}/{total}] Updated {email}: {', '.join(keys)}")
            else:
                logger.warning(
                    f"[{i}/{total}] {email} accepted the update but still differs on "
                    f"{', '.join(not_applied)}"
                )
            results.append(
                {
                    "timestamp": _now(),
                    "email": email,
                    "status": "ok" if success else "partial",
                    "keys": ", ".join(keys),
                    "success": success,
                    "error": "" if success else f"not applied: {', '.join(not_applied)}",
                }
            )
        except Exception as e:
            logger.error(f"[{i}/{total}] Failed to update {email}: {e}")
            results.append(
                {
                    "timestamp": _now(),
                    "email": email,
                    "status": "error",
                    "keys": ", ".join(keys),
                    "success": False,
                    "error": str(e),
                }
            )

    if results:
        writer.append_table(UPDATE_LOG, results)
        succeeded = sum(1 for r in results if r["success"])
        _log_activity(
            writer, options, source.source_key, "group settings", "GroupSettings",
            "Settings Update", "", f"{succeeded}/{len(results)} group(s) updated",
        )

    return results
