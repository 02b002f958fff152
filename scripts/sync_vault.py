#!/usr/bin/env python3
"""
Synchronize an Obsidian vault with Microsoft To Do.

Modes:
- default: run one vault sync and print a summary
- --cleanup: drop cache entries whose anchors are gone from the vault
- --reset-cache: forget all refs and cursors (next sync is a full resync)
- --watch: stay running; sync on startup, on file saves and on the
  auto-sync interval until interrupted

Designed to be run by hand, from cron, or as a long-running service.

Usage:
    python scripts/sync_vault.py [--config CONFIG_PATH] [--reset-cache] [--cleanup] [--watch]
"""

import argparse
import asyncio
import signal
import sys

import structlog

from todosync.models.config import AppConfig
from todosync.providers import build_orchestrator, build_scheduler, get_document_store
from todosync.sync.models import SyncAbortedError, VaultSyncSummary
from todosync.utils.config_loader import ConfigLoader, ConfigurationError
from todosync.utils.logging_config import configure_from_config

log = structlog.stdlib.get_logger()


def print_summary(summary: VaultSyncSummary) -> None:
    """Print a human-readable summary of a sync run."""
    print("\n" + "=" * 60)
    print("SYNCHRONIZATION SUMMARY")
    print("=" * 60)

    if summary.aborted:
        print("Status: ✗ ABORTED")
        if summary.reauth_required:
            print("Reason: credentials rejected, sign in again")
        for error in summary.errors:
            print(f"Error: {error}")
    elif summary.skipped:
        print("Status: - SKIPPED (another sync is running)")
    else:
        print(f"Status: {'✓ SUCCESS' if summary.success else '! COMPLETED WITH ERRORS'}")

    for report in summary.lists:
        print(
            f"List {report.list_id}: pushed={report.pushed} pulled={report.pulled} "
            f"conflicts={report.conflicts} skipped={report.skipped} "
            f"removed={report.removed} errored={report.errored}"
            f"{' (full fetch)' if report.full_fetch else ''}"
        )
        for error in report.errors:
            print(f"  - {error}")

    print(f"Stale cache entries removed: {summary.cleaned}")
    print(f"Duration: {summary.duration_seconds:.2f} seconds")
    print(summary.notice())
    print("=" * 60)


async def run_once(config: AppConfig) -> int:
    orchestrator = build_orchestrator(config)
    try:
        summary = await orchestrator.sync_vault("manual")
    except SyncAbortedError as e:
        print_summary(e.summary)
        return 2 if e.reauth_required else 1

    print_summary(summary)
    return 0 if summary.success else 1


async def run_watch(config: AppConfig) -> int:
    documents = get_document_store(config.vault)
    orchestrator = build_orchestrator(config, documents=documents)
    scheduler = build_scheduler(config, orchestrator, documents, notify=print)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops do not support signal handlers
            pass

    scheduler.start()
    log.info("watch_mode_started", vault_root=config.vault.root)
    try:
        await stop.wait()
    finally:
        scheduler.shutdown()
        await scheduler.wait_idle()
        log.info("watch_mode_stopped")
    return 0


def main():
    """Main entry point for the sync script."""
    parser = argparse.ArgumentParser(description="Synchronize an Obsidian vault with Microsoft To Do")
    parser.add_argument(
        "--config",
        type=str,
        help="Path to configuration file",
        default=None,
    )
    parser.add_argument(
        "--reset-cache",
        action="store_true",
        help="Forget all cached identities and cursors before doing anything else",
    )
    parser.add_argument(
        "--cleanup",
        action="store_true",
        help="Remove cache entries for anchors no longer in the vault, then exit",
    )
    parser.add_argument(
        "--watch",
        action="store_true",
        help="Keep running and sync on file saves and on the auto-sync interval",
    )

    args = parser.parse_args()

    try:
        config_loader = ConfigLoader()
        config = config_loader.load_config(args.config)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    configure_from_config(config.logging)
    for warning in config_loader.validate_config(config):
        print(f"Warning: {warning}", file=sys.stderr)

    if args.reset_cache or args.cleanup:
        orchestrator = build_orchestrator(config)
        if args.reset_cache:
            orchestrator.reset_cache()
            print("Cache reset: the next sync will fully resynchronize every list.")
        if args.cleanup:
            removed = orchestrator.cleanup()
            print(f"Cleanup removed {len(removed)} stale cache entries.")
            if not args.watch:
                sys.exit(0)

    if args.watch:
        sys.exit(asyncio.run(run_watch(config)))

    sys.exit(asyncio.run(run_once(config)))


if __name__ == "__main__":
    main()
