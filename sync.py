#!/usr/bin/env python3
"""
CLI entry point for group change detection and policy checks.

Usage:
    sync list-groups --domain example.com
    sync check-settings --domain example.com --groups team@example.com
    sync run --domain example.com --bypass-etag
    sync apply-updates --domain example.com --dry-run
    sync clear-state --domain example.com
"""

import argparse
import logging
import sys
from datetime import datetime
from pathlib import Path

from groupwatch.engine import (
    ExecutionOptions,
    ReportWriter,
    StateStore,
    StorageError,
    run_apply_updates,
    run_group_settings,
    run_list_groups,
)
from groupwatch.sources import REGISTRY

logger = logging.getLogger(__name__)


def _options(args) -> ExecutionOptions:
    return ExecutionOptions(
        bypass_etag=args.bypass_etag,
        manual=args.manual,
        dry_run=args.dry_run,
        clean_run=args.clean_run,
        check_business_hash=not args.no_business_hash,
        check_full_hash=not args.no_full_hash,
        show_progress=not args.quiet,
    )


def _open_stores(args, params):
    state_path = Path(args.data_dir) / "_state" / f"{params.scope_key}.json"
    state = StateStore(state_path, max_value_bytes=args.state_quota)
    writer = ReportWriter(args.data_dir, params.scope_key)
    return state, writer


def cmd_list_groups(args, params):
    state, writer = _open_stores(args, params)
    groups = run_list_groups(
        params.domain,
        params.source,
        state,
        writer,
        options=_options(args),
        whitelist=params.whitelist,
        blacklist=params.blacklist,
    )
    writer.close()
    print(f"Done! {len(groups)} groups for {params.domain}")
    return 0


def cmd_check_settings(args, params, list_first=False):
    state, writer = _open_stores(args, params)
    options = _options(args)

    emails = params.group_emails
    if not emails and list_first:
        groups = run_list_groups(
            params.domain,
            params.source,
            state,
            writer,
            options=options,
            whitelist=params.whitelist,
            blacklist=params.blacklist,
        )
        emails = [g["email"] for g in groups if g.get("email")]
        # The listing already honored clean_run
        options.clean_run = False
    if not emails:
        emails = state.get_group_emails()

    result = run_group_settings(
        emails,
        params.source,
        state,
        writer,
        params.expected_settings,
        options=options,
        excluded_keys=params.excluded_keys,
    )
    writer.close()
    print(
        f"Done! Checked {len(emails)} groups: {len(result.changed)} changed, "
        f"{len(result.violations)} violations, {len(result.errored)} errors"
    )
    return 1 if result.errored else 0


def cmd_apply_updates(args, params):
    _, writer = _open_stores(args, params)
    options = _options(args)

    if not args.yes and not options.dry_run:
        answer = input("Apply expected settings to every group in the discrepancies report? [y/N] ")
        if answer.strip().lower() not in ("y", "yes"):
            print("Update cancelled.")
            return 1

    results = run_apply_updates(params.source, writer, options=options)
    writer.close()
    failed = [r for r in results if not r["success"]]
    print(f"Done! Updated {len(results) - len(failed)}/{len(results)} groups")
    return 1 if failed else 0


def cmd_clear_state(args, params):
    state, _ = _open_stores(args, params)
    if args.dry_run:
        print(f"[DRY RUN] would clear state in {state.path}")
        return 0
    state.clear()
    print(f"Cleared stored group state for {params.scope_key}")
    return 0


def main():
    source_keys = list(REGISTRY.keys())

    # Shared args inherited by all subcommands
    shared = argparse.ArgumentParser(add_help=False)
    shared.add_argument("--source", choices=source_keys, default=source_keys[0])
    shared.add_argument("--data-dir", default="data", help="State and report directory")
    shared.add_argument("--rate", type=float, default=5, help="API requests per second")
    shared.add_argument(
        "--state-quota", type=int, default=None, help="Max bytes per stored state value"
    )
    shared.add_argument("--bypass-etag", action="store_true", help="Ignore stored ETags")
    shared.add_argument("--manual", action="store_true", help="Skip API fetches")
    shared.add_argument("--dry-run", action="store_true", help="Persist and patch nothing")
    shared.add_argument("--clean-run", action="store_true", help="Forget stored hashes first")
    shared.add_argument("--no-business-hash", action="store_true", help="Ignore business hash changes")
    shared.add_argument("--no-full-hash", action="store_true", help="Ignore full hash changes")
    shared.add_argument("--yes", action="store_true", help="Don't ask before applying updates")
    shared.add_argument("--quiet", action="store_true", help="Suppress progress bars")
    shared.add_argument(
        "--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"]
    )

    parser = argparse.ArgumentParser(description="Workspace group settings watcher")
    sub = parser.add_subparsers(dest="command")

    subparsers = [
        sub.add_parser("list-groups", parents=[shared], help="Fetch the directory group list"),
        sub.add_parser("check-settings", parents=[shared], help="Check group settings"),
        sub.add_parser("run", parents=[shared], help="List groups, then check their settings"),
        sub.add_parser("apply-updates", parents=[shared], help="Patch groups back to policy"),
        sub.add_parser("clear-state", parents=[shared], help="Forget stored hashes and ETags"),
    ]

    # Let each source register its args on every subparser
    for config in REGISTRY.values():
        for sp in subparsers:
            config.add_args(sp)

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 1

    # Logging setup
    handlers = [logging.StreamHandler()]
    if args.quiet:
        log_dir = Path("logs")
        log_dir.mkdir(exist_ok=True)
        log_file = log_dir / f"sync_{datetime.now().strftime('%Y%m%d')}.log"
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%H:%M:%S",
        handlers=handlers,
    )

    config = REGISTRY[args.source]
    if args.command == "clear-state":
        # No API access needed
        args.manual = True

    try:
        params = config.resolve(args)
        if params.source is None and not args.manual:
            raise ValueError(f"Source '{args.source}' could not be configured")

        if args.command == "list-groups":
            return cmd_list_groups(args, params)
        elif args.command == "check-settings":
            return cmd_check_settings(args, params)
        elif args.command == "run":
            return cmd_check_settings(args, params, list_first=True)
        elif args.command == "apply-updates":
            if params.source is None:
                raise ValueError("apply-updates needs API access; drop --manual")
            return cmd_apply_updates(args, params)
        elif args.command == "clear-state":
            return cmd_clear_state(args, params)
    except (ValueError, StorageError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        return 1
    except Exception as e:
        logger.exception(f"Fatal error: {e}")
        return 2

    return 0


if __name__ == "__main__":
    sys.exit(main())
