"""
SQLite index of archived files: relative path -> archival timestamp.

Runs in WAL mode with synchronous=FULL so a committed batch survives power
loss and an interrupted one simply disappears. A structurally broken file is
backed up, dumped and reloaded, and as a last resort replaced by an empty
store. Losing the index only costs duplicate-copy avoidance; refusing to
archive is worse.
"""
import os
import glob
import time
import shutil
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone

from tqdm import tqdm

from tesla_archiver.errors import IndexCorruption

log = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
SIDECARS = ("-wal", "-shm")

SCHEMA = """
CREATE TABLE IF NOT EXISTS files (
  path       TEXT PRIMARY KEY,
  created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);
CREATE INDEX IF NOT EXISTS idx_files_created_at ON files (created_at);
"""


def format_timestamp(value=None):
    """UTC text in the same shape as SQLite's CURRENT_TIMESTAMP."""
    if value is None:
        value = datetime.now(timezone.utc)
    elif isinstance(value, (int, float)):
        value = datetime.fromtimestamp(value, timezone.utc)
    elif isinstance(value, str):
        return value
    elif value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime(TIMESTAMP_FORMAT)


class IndexStore:
    def __init__(self, path):
        self.path = path
        self.conn = None

    @classmethod
    def open(cls, path):
        store = cls(path)
        store.connect()
        return store

    def connect(self):
        db_dir = os.path.dirname(self.path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)
        # autocommit mode; every write goes through transaction()
        self.conn = sqlite3.connect(self.path, isolation_level=None, timeout=30)
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA synchronous=FULL")
        self.conn.executescript(SCHEMA)

    def close(self):
        if self.conn is not None:
            self.conn.close()
            self.conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    @contextmanager
    def transaction(self):
        self.conn.execute("BEGIN IMMEDIATE")
        try:
            yield self.conn
        except BaseException:
            self.conn.execute("ROLLBACK")
            raise
        self.conn.execute("COMMIT")

    def verify_integrity(self):
        try:
            rows = self.conn.execute("PRAGMA integrity_check").fetchall()
        except sqlite3.DatabaseError as e:
            raise IndexCorruption(str(e)) from e
        if rows != [("ok",)]:
            detail = "; ".join(str(r[0]) for r in rows[:5])
            raise IndexCorruption(f"integrity_check reported: {detail}")

    def insert_batch(self, paths, timestamp=None):
        """All paths share one timestamp and one transaction."""
        stamp = format_timestamp(timestamp)
        return self.insert_entries([(p, stamp) for p in paths])

    def insert_entries(self, entries):
        entries = [(path, format_timestamp(ts)) for path, ts in entries]
        if not entries:
            return 0
        with self.transaction() as conn:
            conn.executemany("INSERT OR IGNORE INTO files (path, created_at) VALUES (?, ?)", entries)
        return len(entries)

    def oldest(self, n):
        """n entries with the smallest timestamp; path breaks ties."""
        cur = self.conn.execute(
            "SELECT path, created_at FROM files ORDER BY created_at ASC, path ASC LIMIT ?", (n,)
        )
        return cur.fetchall()

    def delete(self, paths):
        paths = list(paths)
        if not paths:
            return 0
        with self.transaction() as conn:
            conn.executemany("DELETE FROM files WHERE path = ?", [(p,) for p in paths])
        return len(paths)

    def prune_older_than(self, months):
        with self.transaction() as conn:
            cur = conn.execute(
                "DELETE FROM files WHERE created_at < datetime('now', ?)", (f"-{int(months)} months",)
            )
            return cur.rowcount

    def vacuum(self):
        self.conn.execute("VACUUM")

    def count(self):
        return self.conn.execute("SELECT COUNT(*) FROM files").fetchone()[0]

    def paths(self):
        return {row[0] for row in self.conn.execute("SELECT path FROM files")}

    def contains(self, path):
        row = self.conn.execute("SELECT 1 FROM files WHERE path = ?", (path,)).fetchone()
        return row is not None


# --- RECOVERY ---

def check_file(path):
    """Integrity check against an existing file without touching its schema."""
    conn = sqlite3.connect(path)
    try:
        rows = conn.execute("PRAGMA integrity_check").fetchall()
    except sqlite3.DatabaseError as e:
        raise IndexCorruption(str(e)) from e
    finally:
        conn.close()
    if rows != [("ok",)]:
        raise IndexCorruption("; ".join(str(r[0]) for r in rows[:5]))


def open_index(path):
    """Verifies (and if needed repairs) the store, then opens it."""
    if os.path.exists(path):
        log.info("[INDEX] Verifying database integrity")
        try:
            check_file(path)
            log.info("[OK] Database integrity verified")
        except IndexCorruption as e:
            log.warning("[WARN] Database corruption detected (%s), attempting repair", e)
            repair_index(path)
    return IndexStore.open(path)


def _remove_db_files(path):
    for target in [path] + [path + s for s in SIDECARS]:
        if os.path.exists(target):
            os.remove(target)


def backup_corrupt(path):
    stamp = time.strftime("%Y%m%d%H%M%S")
    backup = f"{path}.corrupted.{stamp}"
    shutil.copy2(path, backup)
    for suffix in SIDECARS:
        if os.path.exists(path + suffix):
            shutil.copy2(path + suffix, backup + suffix)
    log.info("[INDEX] Corrupt database saved as %s", os.path.basename(backup))
    return backup


def dump_and_reload(path):
    dump_path = f"{path}.dump"
    src = sqlite3.connect(path)
    try:
        with open(dump_path, "w", encoding="utf-8") as f:
            for line in src.iterdump():
                f.write(f"{line}\n")
    finally:
        src.close()

    _remove_db_files(path)

    with open(dump_path, "r", encoding="utf-8") as f:
        script = f.read()
    dst = sqlite3.connect(path)
    try:
        dst.executescript(script)
    finally:
        dst.close()

    check_file(path)
    os.remove(dump_path)


def repair_index(path):
    """
    Backup -> dump/reload -> reinitialize. Returns "repaired" or "reinitialized".
    Never raises for a corrupt store.
    """
    try:
        backup_corrupt(path)
    except OSError as e:
        log.warning("[WARN] Could not back up corrupt database: %s", e)

    try:
        dump_and_reload(path)
        log.info("[OK] Database recovered successfully")
        return "repaired"
    except (sqlite3.DatabaseError, IndexCorruption, OSError) as e:
        log.error("[ERROR] Database too corrupted to recover (%s), reinitializing", e)

    _remove_db_files(path)
    return "reinitialized"


def reconcile_index(store, archive_root):
    """
    Drops entries whose archived file is gone. Returns the number removed.

    Unindexed files are left alone here: only the sync pass can tell a
    complete copy from a partial one, and it registers the complete ones.
    """
    missing = []
    for rel in tqdm(sorted(store.paths()), desc="  Checking index", unit=" entries", leave=False, disable=None):
        if not os.path.isfile(os.path.join(archive_root, rel)):
            missing.append(rel)

    if missing:
        log.warning("[RECONCILE] Dropping %d index entr(ies) with no archived file", len(missing))
        store.delete(missing)
    return len(missing)


def cleanup_stale_artifacts(db_path, max_age_days, now=None):
    """Deletes corrupted-db backups and leftover dumps older than max_age_days."""
    now = now or time.time()
    cutoff = now - max_age_days * 86400
    candidates = glob.glob(glob.escape(db_path) + ".corrupted.*") + glob.glob(glob.escape(db_path) + ".dump")

    removed = 0
    for artifact in sorted(candidates):
        try:
            if os.path.isfile(artifact) and os.path.getmtime(artifact) < cutoff:
                os.remove(artifact)
                removed += 1
                log.info("[INDEX] Removed old database artifact: %s", os.path.basename(artifact))
        except OSError as e:
            log.warning("[WARN] Could not remove %s: %s", artifact, e)
    return removed
