import os
import shutil
import logging
from dataclasses import dataclass

from tesla_archiver.logs import format_bytes

log = logging.getLogger(__name__)


@dataclass
class EvictionReport:
    deleted_count: int = 0
    bytes_freed: int = 0
    free_pct_before: float = 0.0
    free_pct_after: float = 0.0
    # batch ran dry while still under the threshold; next run continues
    incomplete: bool = False


def disk_free_percent(path):
    usage = shutil.disk_usage(path)
    if usage.total == 0:
        return 0.0
    return usage.free * 100.0 / usage.total


def prune_empty_dirs(root):
    """Removes empty directories below root (never root itself). Returns count."""
    removed = 0
    for current, dirs, files in os.walk(root, topdown=False):
        if current == root or os.path.basename(current) == "lost+found":
            continue
        try:
            if not os.listdir(current):
                os.rmdir(current)
                removed += 1
        except OSError as e:
            log.warning("[WARN] Could not remove empty directory %s: %s", current, e)
    return removed


def enforce(store, archive_root, min_free_pct, batch=100, recheck_every=5, prune_root=None):
    """
    Deletes the oldest-archived files until free space reaches min_free_pct
    or one batch of candidates is used up. Index entries whose file is already
    gone are dropped on the way.
    """
    report = EvictionReport()
    free_pct = disk_free_percent(archive_root)
    report.free_pct_before = report.free_pct_after = free_pct
    log.info("[SPACE] Archive disk: %.1f%% free (threshold %d%%)", free_pct, min_free_pct)

    if free_pct >= min_free_pct:
        return report

    log.info("[SPACE] Below threshold, removing oldest footage")
    to_unindex = []
    satisfied = False

    for rel, archived_at in store.oldest(batch):
        full_path = os.path.join(archive_root, rel)

        if not os.path.isfile(full_path):
            # stale entry, file already gone
            to_unindex.append(rel)
            continue

        try:
            size = os.path.getsize(full_path)
            os.remove(full_path)
        except OSError as e:
            log.warning("[WARN] Failed to remove %s: %s", full_path, e)
            continue

        log.info("[EVICT] %s (%s, archived %s)", rel, format_bytes(size), archived_at)
        to_unindex.append(rel)
        report.deleted_count += 1
        report.bytes_freed += size

        if report.deleted_count % recheck_every == 0:
            store.delete(to_unindex)
            to_unindex = []
            free_pct = disk_free_percent(archive_root)
            if free_pct >= min_free_pct:
                satisfied = True
                break

    store.delete(to_unindex)

    if report.deleted_count:
        prune_empty_dirs(prune_root or archive_root)

    report.free_pct_after = disk_free_percent(archive_root)
    if not satisfied and report.free_pct_after < min_free_pct:
        report.incomplete = True

    log.info("[SPACE] Removed %d file(s), freed %s; now %.1f%% free",
             report.deleted_count, format_bytes(report.bytes_freed), report.free_pct_after)
    return report
