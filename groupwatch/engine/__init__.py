from .base import (
    ChangeRecord,
    DirectoryListing,
    ExecutionOptions,
    HashMap,
    HashPair,
    ResolvedParams,
    SourceConfig,
    SourceDefinition,
)
from .database import ReportWriter
from .diff import changed_keys, describe_changes, diff
from .engine import (
    RateLimiter,
    SettingsRunResult,
    build_update_payloads,
    filter_groups,
    find_violations,
    run_apply_updates,
    run_group_settings,
    run_list_groups,
)
from .hash import (
    MISSING,
    compute_hash,
    compute_hash_map,
    compute_hash_pair,
    hash_group_list,
    project_business,
    project_full,
)
from .storage import HashStore, MemoryHashStore, StateHashStore, StateStore, StorageError

__all__ = [
    "ChangeRecord",
    "DirectoryListing",
    "ExecutionOptions",
    "HashMap",
    "HashPair",
    "HashStore",
    "MISSING",
    "MemoryHashStore",
    "RateLimiter",
    "ReportWriter",
    "ResolvedParams",
    "SettingsRunResult",
    "SourceConfig",
    "SourceDefinition",
    "StateHashStore",
    "StateStore",
    "StorageError",
    "build_update_payloads",
    "changed_keys",
    "compute_hash",
    "compute_hash_map",
    "compute_hash_pair",
    "describe_changes",
    "diff",
    "filter_groups",
    "find_violations",
    "hash_group_list",
    "project_business",
    "project_full",
    "run_apply_updates",
    "run_group_settings",
    "run_list_groups",
]
