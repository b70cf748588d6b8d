import os
import sys
import shutil
import argparse
import logging

from tesla_archiver import SYSTEM_NAME, VERSION
from tesla_archiver.config import load_settings, resolve_config_path
from tesla_archiver.coordinator import run_archive, run_index_only, EXIT_FAILED
from tesla_archiver.errors import ArchiverError, ConfigError
from tesla_archiver.index import IndexStore
from tesla_archiver.logs import setup_logging, format_bytes
from tesla_archiver.snapshot import SnapshotManager

EXIT_CONFIG = 2

log = logging.getLogger(__name__)


def show_status(settings):
    print("\n" + "=" * 60)
    print(f"{SYSTEM_NAME} v{VERSION}")
    print("=" * 60)

    if os.path.isdir(settings.archive_dir):
        usage = shutil.disk_usage(settings.archive_dir)
        free_pct = usage.free * 100.0 / usage.total if usage.total else 0.0
        print("Archive Storage:")
        print(f"  Path:   {settings.archive_dir}")
        print(f"  Total:  {format_bytes(usage.total)}")
        print(f"  Used:   {format_bytes(usage.used)}")
        print(f"  Free:   {format_bytes(usage.free)} ({free_pct:.1f}%, threshold {settings.min_free_pct}%)")
    else:
        print(f"  [WARN] Archive directory not found: {settings.archive_dir}")

    print("-" * 60)
    if os.path.exists(settings.db_path):
        with IndexStore.open(settings.db_path) as store:
            oldest = store.oldest(1)
            print(f"  Indexed files: {store.count()}")
            if oldest:
                print(f"  Oldest entry:  {oldest[0][0]} ({oldest[0][1]} UTC)")
    else:
        print(f"  [NOTE] No index yet at {settings.db_path}")

    snapshots = SnapshotManager(settings)
    if snapshots.detect_orphan():
        print(f"  [NOTE] Snapshot {snapshots.handle().device} exists (run in progress or interrupted)")
    print("=" * 60 + "\n")


def build_parser():
    parser = argparse.ArgumentParser(
        prog="tesla-archiver",
        description="Archive dashcam footage from a live USB volume via LVM snapshots.",
    )
    parser.add_argument("--run", action="store_true", help="Run one archive cycle (snapshot, sync, retention)")
    parser.add_argument("--status", action="store_true", help="Show archive storage and index status")
    parser.add_argument("--verify-index", action="store_true", help="Check/repair the index and reconcile it with the archive")
    parser.add_argument("--prune-index", action="store_true", help="Prune old index entries and stale database backups")
    parser.add_argument("--config", metavar="PATH", help="Configuration file (default: $TESLA_ARCHIVE_CONFIG or /etc/tesla-usb/tesla-archive.cfg)")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    return parser


def main(argv=None):
    parser = build_parser()
    argv = sys.argv[1:] if argv is None else argv

    # If no arguments are provided print full help
    if not argv:
        parser.print_help()
        return 0

    args = parser.parse_args(argv)

    try:
        settings = load_settings(args.config)
    except ConfigError as e:
        print(f"[FATAL] {e} (config: {resolve_config_path(args.config)})", file=sys.stderr)
        return EXIT_CONFIG

    if args.status:
        show_status(settings)
        return 0

    os.makedirs(settings.archive_dir, exist_ok=True)
    setup_logging(settings.log_file, verbose=args.verbose)

    try:
        if args.verify_index:
            return run_index_only(settings, "verify")
        if args.prune_index:
            return run_index_only(settings, "prune")
        if args.run:
            return run_archive(settings)
    except ArchiverError as e:
        log.error("[FATAL] %s", e)
        return EXIT_FAILED

    parser.print_help()
    return 0
