import os
import fnmatch
import logging
from dataclasses import dataclass, field

from tqdm import tqdm

from tesla_archiver.errors import CopyFailure
from tesla_archiver.logs import format_bytes
from tesla_archiver.shell import run_command, last_line

log = logging.getLogger(__name__)


@dataclass
class SyncReport:
    files_copied: int = 0
    bytes_copied: int = 0
    skipped: int = 0
    # complete copies found without an index entry
    registered: int = 0
    failures: list = field(default_factory=list)


def iter_files(root, subdir="", pattern="*.mp4"):
    """
    Yields (relative_path, full_path) for regular files matching pattern under
    root/subdir, in a stable order. Paths are relative to root, not subdir.
    A missing directory yields nothing.
    """
    scan_root = os.path.join(root, subdir) if subdir else root
    if not os.path.isdir(scan_root):
        return

    for current, dirs, files in os.walk(scan_root):
        dirs.sort()
        for name in sorted(files):
            if not fnmatch.fnmatch(name, pattern):
                continue
            full_path = os.path.join(current, name)
            if os.path.islink(full_path) or not os.path.isfile(full_path):
                continue
            yield os.path.relpath(full_path, root), full_path


def file_size(path):
    try:
        return os.stat(path).st_size
    except FileNotFoundError:
        return None


def copy_file(src, dest):
    """
    In-place, delta-capable rsync of one file. A partial earlier copy is
    extended rather than restarted; timestamps are preserved.
    """
    cmd = ["rsync", "-a", "--no-whole-file", "--inplace", src, dest]
    res = run_command(cmd)
    if res.returncode != 0:
        raise CopyFailure(f"rsync exit code {res.returncode}: {last_line(res.stderr)}")


def find_candidates(snapshot_root, archive_root, source_subdir, pattern, report):
    """
    New files and size-mismatched (incomplete) copies, plus the relative paths
    whose archive copy already matches the source size.
    """
    candidates = []
    complete = []
    for rel, src in iter_files(snapshot_root, source_subdir, pattern):
        try:
            size = os.stat(src).st_size
        except OSError as e:
            log.warning("[WARN] Cannot stat %s: %s", rel, e)
            report.failures.append((rel, str(e)))
            continue

        dest = os.path.join(archive_root, rel)
        dest_size = file_size(dest)
        if dest_size is None or dest_size != size:
            candidates.append((rel, src, dest, size, dest_size))
        else:
            complete.append(rel)
            report.skipped += 1
    return candidates, complete


def sync_snapshot(snapshot_root, archive_root, store, batch_size=50, source_subdir="TeslaCam",
                  pattern="*.mp4", check_snapshot=None):
    """
    Copies new or incomplete files from the mounted snapshot into the archive
    and registers each verified copy in the index, batch_size per transaction.

    Per-file failures are collected in the report; they are retried by the
    next run because the destination stays absent or size-mismatched.
    check_snapshot, if given, runs before each index commit and may raise
    SnapshotExhausted.
    """
    report = SyncReport()
    scan_root = os.path.join(snapshot_root, source_subdir) if source_subdir else snapshot_root
    log.info("[SYNC] Scanning for new footage in %s", scan_root)

    if not os.path.isdir(scan_root):
        log.info("[SYNC] No %s directory found", source_subdir or "source")
        return report

    # 1. DISCOVER
    candidates, complete = find_candidates(snapshot_root, archive_root, source_subdir, pattern, report)
    total_bytes = sum(c[3] for c in candidates)

    pending = []

    def flush():
        if check_snapshot:
            check_snapshot()
        if pending:
            store.insert_batch(list(pending))
            log.info("[INDEX] Committed batch of %d insert(s)", len(pending))
            del pending[:]

    # 2. REGISTER complete copies left unindexed by an interrupted run
    indexed = store.paths()
    for rel in complete:
        if rel in indexed:
            continue
        pending.append(rel)
        report.registered += 1
        if len(pending) >= batch_size:
            flush()
    if report.registered:
        log.info("[INDEX] Registering %d complete archived file(s) missing from the index", report.registered)

    # 3. COPY + INDEX

    with tqdm(total=total_bytes, unit="B", unit_scale=True, desc="  Archiving", leave=False, disable=None) as pbar:
        for rel, src, dest, size, dest_size in candidates:
            if dest_size is None:
                log.info("[COPY] %s (%s)", rel, format_bytes(size))
            else:
                log.info("[RECOPY] Incomplete file %s (source: %s, archive: %s)",
                         rel, format_bytes(size), format_bytes(dest_size))

            try:
                os.makedirs(os.path.dirname(dest), exist_ok=True)
                copy_file(src, dest)
                copied = file_size(dest)
                if copied != size:
                    raise CopyFailure(f"size mismatch after copy (source {size}, archive {copied})")
            except (CopyFailure, OSError) as e:
                log.warning("[WARN] Failed to copy %s: %s", rel, e)
                report.failures.append((rel, str(e)))
                continue
            finally:
                pbar.update(size)

            report.files_copied += 1
            report.bytes_copied += size
            pending.append(rel)

            if len(pending) >= batch_size:
                flush()

    flush()

    if report.files_copied == 0:
        log.info("[SYNC] No new files found to archive")
    else:
        log.info("[SYNC] Copied %d new file(s) totaling %s",
                 report.files_copied, format_bytes(report.bytes_copied))
    if report.failures:
        log.warning("[WARN] %d file(s) failed and will be retried next run", len(report.failures))
    return report
