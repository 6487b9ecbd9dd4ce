"""
Contracts for the group change-detection engine.

- HashPair / ChangeRecord: the values flowing through hash -> diff
- ExecutionOptions: per-run switches shared by every pipeline
- SourceDefinition: everything the engine needs from a directory source
- SourceConfig: CLI/orchestration contract (args, domain, policy)
"""

import argparse
from dataclasses import asdict, dataclass, field
from typing import Callable

# Reason tags on ChangeRecord
REASON_NEW = "new"
REASON_CHANGED = "changed"


@dataclass(frozen=True)
class HashPair:
    """Two digests derived from one settings object."""

    business_hash: str
    full_hash: str

    def to_dict(self) -> dict:
        # camelCase keys in stored state
        return {"businessHash": self.business_hash, "fullHash": self.full_hash}

    @classmethod
    def from_dict(cls, data: dict) -> "HashPair":
        return cls(
            business_hash=data.get("businessHash", ""),
            full_hash=data.get("fullHash", ""),
        )


# entity id -> HashPair
HashMap = dict[str, HashPair]


@dataclass(frozen=True)
class ChangeRecord:
    """One entity whose business and/or full hash differs from the baseline."""

    entity_id: str
    business: bool
    full: bool
    reason: str = REASON_CHANGED

    @property
    def is_new(self) -> bool:
        return self.reason == REASON_NEW


@dataclass
class ExecutionOptions:
    """Switches for a single sync run."""

    # Ignore stored ETags and always fetch a fresh listing
    bypass_etag: bool = False
    # Skip every API fetch and report from stored state only
    manual: bool = False
    # Compute and log everything, persist nothing, patch nothing
    dry_run: bool = False
    # Forget stored hashes/ETags before running
    clean_run: bool = False
    check_business_hash: bool = True
    check_full_hash: bool = True
    show_progress: bool = True

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass
class SourceDefinition:
    """
    Everything the engine needs to talk to a group directory.

    The engine never imports source-specific code; it only calls the
    callables on this object.
    """

    # Unique key for this source (e.g. "google_groups")
    source_key: str

    # (domain, etag | None) -> DirectoryListing | None
    # None means the listing is unchanged since `etag` (HTTP 304).
    list_groups_fn: Callable

    # (raw_group) -> dict with email, name, description, directMembersCount,
    # adminCreated and etag
    normalize_fn: Callable[[dict], dict]

    # (email) -> dict
    # Raises invalid_entry_exception when the group doesn't exist.
    get_settings_fn: Callable[[str], dict]

    # (email, payload) -> dict
    patch_settings_fn: Callable[[str, dict], dict]

    # Exception type(s) meaning "group doesn't exist"; the engine skips
    # these entries without counting them as errors.
    invalid_entry_exception: type[Exception] | tuple[type[Exception], ...]


@dataclass
class DirectoryListing:
    """One complete (all pages) directory listing."""

    groups: list[dict]
    etag: str | None = None


@dataclass
class ResolvedParams:
    """Output of SourceConfig.resolve(): everything the pipelines need to run."""

    domain: str
    scope_key: str
    expected_settings: dict
    source: SourceDefinition | None = None  # None means offline (manual mode)
    excluded_keys: tuple[str, ...] = ("etag",)
    whitelist: list[str] = field(default_factory=list)
    blacklist: list[str] = field(default_factory=list)
    group_emails: list[str] = field(default_factory=list)


class SourceConfig:
    """
    CLI and orchestration configuration for a source.

    Each source subclasses this to declare its CLI args and how to resolve
    them into pipeline parameters. The CLI never contains source-specific logic.
    """

    def __init__(self, source_key: str):
        self.source_key = source_key

    def add_args(self, parser: argparse.ArgumentParser) -> None:
        """Register source-specific CLI arguments. Override in subclass."""
        pass

    def resolve(self, args: argparse.Namespace) -> ResolvedParams:
        """Resolve CLI args into pipeline parameters. Must be overridden."""
        raise NotImplementedError
