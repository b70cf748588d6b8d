"""
Run coordinator: one archive cycle from lock to lock release.

  Idle -> LockAcquired -> Recovering -> SnapshotActive -> Syncing
       -> SnapshotTeardown -> RetentionCheck -> IndexMaintenance -> Done

Any uncaught error ends in Failed; a hot disk ends in SkippedDueToPrecondition.
Whatever the exit path, a live snapshot is torn down and the lock released.
"""
import os
import signal
import shutil
import logging

from tesla_archiver import index, retention, sync, telemetry
from tesla_archiver.errors import PreconditionSkip, RunInterrupted, SnapshotError
from tesla_archiver.lock import InstanceLock
from tesla_archiver.logs import format_bytes
from tesla_archiver.snapshot import SnapshotManager

log = logging.getLogger(__name__)

IDLE = "Idle"
LOCK_ACQUIRED = "LockAcquired"
RECOVERING = "Recovering"
SNAPSHOT_ACTIVE = "SnapshotActive"
SYNCING = "Syncing"
SNAPSHOT_TEARDOWN = "SnapshotTeardown"
RETENTION_CHECK = "RetentionCheck"
INDEX_MAINTENANCE = "IndexMaintenance"
DONE = "Done"
FAILED = "Failed"
SKIPPED = "SkippedDueToPrecondition"

EXIT_OK = 0
EXIT_FAILED = 1

HANDLED_SIGNALS = (signal.SIGTERM, signal.SIGHUP)


class SignalGuard:
    """
    Turns SIGTERM/SIGHUP into RunInterrupted so the normal finalizer runs.
    While deferred (during teardown) a signal is only recorded.
    """

    def __init__(self, signals=HANDLED_SIGNALS):
        self.signals = signals
        self.received = None
        self.deferred = False
        self._previous = {}

    def _handler(self, signum, frame):
        if self.received is not None or self.deferred:
            self.received = self.received or signum
            return
        self.received = signum
        raise RunInterrupted(signum)

    def defer(self):
        self.deferred = True

    def __enter__(self):
        for sig in self.signals:
            self._previous[sig] = signal.signal(sig, self._handler)
        return self

    def __exit__(self, exc_type, exc, tb):
        for sig, previous in self._previous.items():
            signal.signal(sig, previous)
        self._previous = {}
        return False


def maintain_index(store, settings):
    """Prunes entries past the retention horizon and old backup artifacts."""
    log.info("[INDEX] Running database maintenance")
    before = store.count()
    pruned = store.prune_older_than(settings.index_retention_months)
    after = store.count()
    log.info("[INDEX] Pruned %d old record(s) (before: %d, after: %d)", pruned, before, after)
    if pruned:
        store.vacuum()

    removed = index.cleanup_stale_artifacts(settings.db_path, settings.backup_retention_days)
    if not removed:
        log.info("[OK] No old database backups to clean")
    return pruned, removed


def eviction_root(settings):
    if settings.source_subdir:
        return os.path.join(settings.archive_dir, settings.source_subdir)
    return settings.archive_dir


class ArchiveRun:
    def __init__(self, settings, snapshots=None, guard=None):
        self.settings = settings
        self.snapshots = snapshots or SnapshotManager(settings)
        self.guard = guard
        self.state = IDLE
        self.history = [IDLE]
        self.store = None
        self.snapshot = None
        self.snapshot_live = False
        self.sync_report = None
        self.eviction_report = None

    def transition(self, state):
        log.debug("[STATE] %s -> %s", self.state, state)
        self.state = state
        self.history.append(state)

    def execute(self):
        """Runs every state after LockAcquired and returns the exit code."""
        try:
            self.transition(RECOVERING)
            self.recover()

            self.transition(SNAPSHOT_ACTIVE)
            self.activate_snapshot()

            self.transition(SYNCING)
            self.sync()

            # Per-file failures never stop us here
            self.transition(SNAPSHOT_TEARDOWN)
            self.teardown_snapshot()

            self.transition(RETENTION_CHECK)
            self.check_retention()

            self.transition(INDEX_MAINTENANCE)
            maintain_index(self.store, self.settings)

            self.transition(DONE)
            self.log_summary()
            return EXIT_OK

        except PreconditionSkip as e:
            self.transition(SKIPPED)
            log.info("[SKIP] %s", e)
            return EXIT_OK
        except RunInterrupted as e:
            self.transition(FAILED)
            log.error("[ABORTED] %s during %s", e, self.history[-2])
            return 128 + e.signum
        except KeyboardInterrupt:
            self.transition(FAILED)
            log.error("[ABORTED] Interrupted during %s", self.history[-2])
            return 128 + signal.SIGINT
        except SnapshotError as e:
            self.transition(FAILED)
            log.error("[FATAL] %s", e)
            return EXIT_FAILED
        except Exception as e:
            self.transition(FAILED)
            log.exception("[FATAL] Unexpected error during %s: %s", self.history[-2], e)
            return EXIT_FAILED
        finally:
            if self.guard:
                self.guard.defer()
            self.finalize()

    # --- STATES ---

    def recover(self):
        s = self.settings
        log.info("[RECOVERY] Running recovery checks for interrupted previous runs")

        # 1. Orphaned snapshot from a crashed run is reclaimed, never reused
        orphan = self.snapshots.detect_orphan()
        if orphan:
            log.warning("[WARN] Found stale snapshot %s from an interrupted run, cleaning up", orphan.device)
            self.snapshots.destroy(orphan)

        # 2. Index integrity, then agreement with the archive tree
        self.store = index.open_index(s.db_path)
        index.reconcile_index(self.store, s.archive_dir)

        # 3. Thermal precondition (optional telemetry)
        temp = telemetry.read_disk_temperature(s.archive_dir, sudo=s.use_sudo)
        if temp is not None and temp > s.max_disk_temp:
            raise PreconditionSkip(
                f"Disk temperature too high ({temp}C > {s.max_disk_temp}C), skipping this run"
            )

    def activate_snapshot(self):
        self.snapshots.ensure_mount_point_free()
        # live before lvcreate returns: a half-created snapshot still gets removed
        self.snapshot_live = True
        self.snapshot = self.snapshots.create()
        self.snapshots.mount(self.snapshot)

    def sync(self):
        s = self.settings
        handle = self.snapshot
        self.sync_report = sync.sync_snapshot(
            s.snap_mount,
            s.archive_dir,
            self.store,
            batch_size=s.batch_size,
            source_subdir=s.source_subdir,
            pattern=s.file_pattern,
            check_snapshot=lambda: self.snapshots.check_valid(handle),
        )

    def teardown_snapshot(self):
        log.info("[SNAPSHOT] Tearing down snapshot")
        if not self.snapshots.destroy(self.snapshot):
            log.warning("[WARN] Snapshot teardown incomplete; next run will clean it up")
        self.snapshot_live = False
        self.snapshot = None

    def check_retention(self):
        s = self.settings
        self.eviction_report = retention.enforce(
            self.store,
            s.archive_dir,
            s.min_free_pct,
            batch=s.eviction_batch,
            recheck_every=s.eviction_recheck,
            prune_root=eviction_root(s),
        )
        if self.eviction_report.incomplete:
            log.warning("[WARN] Eviction batch exhausted at %.1f%% free (< %d%%); next run continues",
                        self.eviction_report.free_pct_after, s.min_free_pct)

    def finalize(self):
        if self.snapshot_live:
            log.info("[CLEANUP] Removing snapshot left by failed run")
            try:
                self.teardown_snapshot()
            except Exception as e:
                log.error("[ERROR] Snapshot cleanup failed: %s", e)
        if self.store is not None:
            self.store.close()
            self.store = None

    def log_summary(self):
        if self.sync_report:
            log.info("[SUMMARY] Archived %d file(s) (%s), %d failure(s)",
                     self.sync_report.files_copied, format_bytes(self.sync_report.bytes_copied),
                     len(self.sync_report.failures))
        if self.eviction_report and self.eviction_report.deleted_count:
            log.info("[SUMMARY] Evicted %d file(s) (%s)",
                     self.eviction_report.deleted_count, format_bytes(self.eviction_report.bytes_freed))
        try:
            usage = shutil.disk_usage(self.settings.archive_dir)
            log.info("[SUMMARY] Archive disk usage: %s used, %s available",
                     format_bytes(usage.used), format_bytes(usage.free))
        except OSError:
            pass


def run_archive(settings, snapshots=None):
    """Single-instance archive cycle. Returns the process exit code."""
    log.info("[START] Starting TeslaCam archive process")
    log.info("[START] Archive directory: %s", settings.archive_dir)
    log.info("[START] Database: %s", settings.db_path)

    lock = InstanceLock(settings.lock_file)
    try:
        acquired = lock.acquire()
    except OSError as e:
        log.error("[ERROR] Failed to open lock file %s: %s", settings.lock_file, e)
        return EXIT_FAILED

    if not acquired:
        log.info("[LOCK] Another instance is already running, exiting gracefully")
        return EXIT_OK

    with SignalGuard() as guard:
        run = ArchiveRun(settings, snapshots=snapshots, guard=guard)
        run.transition(LOCK_ACQUIRED)
        try:
            code = run.execute()
        finally:
            lock.release()
            log.info("[LOCK] Lock released")

    # a signal caught during teardown still decides the exit status
    if guard.received is not None and code != 128 + guard.received:
        log.error("[ABORTED] Signal %d received during teardown", guard.received)
        code = 128 + guard.received

    if code == EXIT_OK:
        log.info("[OK] Process completed successfully (%s)", run.state)
    else:
        log.error("[FAILED] Process exited with code %d", code)
    return code


def run_index_only(settings, task):
    """
    Index housekeeping outside a full cycle ("verify" or "prune"), under the
    same instance lock.
    """
    lock = InstanceLock(settings.lock_file)
    try:
        acquired = lock.acquire()
    except OSError as e:
        log.error("[ERROR] Failed to open lock file %s: %s", settings.lock_file, e)
        return EXIT_FAILED

    if not acquired:
        log.info("[LOCK] Another instance is already running, exiting gracefully")
        return EXIT_OK

    store = None
    try:
        store = index.open_index(settings.db_path)
        if task == "verify":
            store.verify_integrity()
            removed = index.reconcile_index(store, settings.archive_dir)
            log.info("[OK] Index holds %d entr(ies); dropped %d without a file", store.count(), removed)
        elif task == "prune":
            maintain_index(store, settings)
        else:
            raise ValueError(f"Unknown index task: {task}")
        return EXIT_OK
    finally:
        if store is not None:
            store.close()
        lock.release()
