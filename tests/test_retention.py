import tempfile
import unittest
from pathlib import Path
from unittest import mock

from tesla_archiver import retention
from tesla_archiver.index import IndexStore


class FakeDisk:
    """Free-space percentage that rises as archived files are deleted."""

    def __init__(self, root, start_pct, pct_per_file):
        self.root = Path(root)
        self.start_pct = start_pct
        self.pct_per_file = pct_per_file
        self.initial = self.count()
        self.calls = 0

    def count(self):
        return sum(1 for p in self.root.rglob("*.mp4"))

    def __call__(self, path):
        self.calls += 1
        return self.start_pct + (self.initial - self.count()) * self.pct_per_file


class RetentionTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.archive = Path(self._tmp.name)
        self.store = IndexStore.open(str(self.archive / ".file_index.sqlite"))

    def tearDown(self) -> None:
        self.store.close()
        self._tmp.cleanup()

    def archive_file(self, rel, archived_at, size=100):
        path = self.archive / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"x" * size)
        self.store.insert_batch([rel], archived_at)
        return path

    def enforce(self, disk, **kwargs):
        with mock.patch.object(retention, "disk_free_percent", side_effect=disk):
            return retention.enforce(self.store, str(self.archive), 10, **kwargs)

    def test_noop_when_enough_space(self) -> None:
        clip = self.archive_file("TeslaCam/a.mp4", "2024-01-01 00:00:00")
        report = self.enforce(FakeDisk(self.archive, 50, 1))
        self.assertEqual(report.deleted_count, 0)
        self.assertTrue(clip.exists())
        self.assertEqual(self.store.count(), 1)

    def test_two_files_evicted_oldest_first(self) -> None:
        newer = self.archive_file("TeslaCam/newer.mp4", "2024-01-02 00:00:00")
        older = self.archive_file("TeslaCam/older.mp4", "2024-01-01 00:00:00")
        disk = FakeDisk(self.archive, 5, 1)

        with mock.patch.object(retention, "disk_free_percent", side_effect=disk), \
                mock.patch.object(retention.os, "remove", wraps=retention.os.remove) as remover:
            report = retention.enforce(self.store, str(self.archive), 10, recheck_every=1)

        removed = [Path(c.args[0]).name for c in remover.call_args_list]
        self.assertEqual(removed, ["older.mp4", "newer.mp4"])
        self.assertFalse(older.exists())
        self.assertFalse(newer.exists())
        self.assertEqual(report.deleted_count, 2)
        self.assertEqual(report.bytes_freed, 200)
        self.assertEqual(self.store.count(), 0)
        self.assertTrue(report.incomplete)

    def test_stops_once_threshold_reached(self) -> None:
        for day in range(1, 9):
            self.archive_file(f"TeslaCam/{day}.mp4", f"2024-01-0{day} 00:00:00")

        report = self.enforce(FakeDisk(self.archive, 8, 1), recheck_every=1)

        self.assertEqual(report.deleted_count, 2)
        self.assertFalse(report.incomplete)
        self.assertEqual(
            sorted(p for p, _ in self.store.oldest(10)),
            sorted(f"TeslaCam/{d}.mp4" for d in range(3, 9)),
        )

    def test_recheck_interval_batches_deletions(self) -> None:
        for day in range(1, 9):
            self.archive_file(f"TeslaCam/{day}.mp4", f"2024-01-0{day} 00:00:00")

        report = self.enforce(FakeDisk(self.archive, 8, 1), recheck_every=5)

        # threshold already met after 2, but only checked at 5
        self.assertEqual(report.deleted_count, 5)
        self.assertEqual(self.store.count(), 3)

    def test_stale_entry_is_dropped_without_counting(self) -> None:
        self.store.insert_batch(["TeslaCam/vanished.mp4"], "2023-12-31 00:00:00")
        self.archive_file("TeslaCam/real.mp4", "2024-01-01 00:00:00")

        report = self.enforce(FakeDisk(self.archive, 5, 10), recheck_every=1)

        self.assertEqual(report.deleted_count, 1)
        self.assertEqual(self.store.count(), 0)

    def test_batch_limit_marks_incomplete(self) -> None:
        for day in range(1, 5):
            self.archive_file(f"TeslaCam/{day}.mp4", f"2024-01-0{day} 00:00:00")

        report = self.enforce(FakeDisk(self.archive, 1, 1), batch=2, recheck_every=1)

        self.assertEqual(report.deleted_count, 2)
        self.assertTrue(report.incomplete)
        self.assertEqual(self.store.count(), 2)

    def test_empty_directories_are_pruned(self) -> None:
        self.archive_file("TeslaCam/SavedClips/2024-01-01/a.mp4", "2024-01-01 00:00:00")
        keep = self.archive_file("TeslaCam/SavedClips/2024-01-02/b.mp4", "2024-01-02 00:00:00")
        (self.archive / "lost+found").mkdir()

        self.enforce(FakeDisk(self.archive, 5, 10), recheck_every=1)

        self.assertFalse((self.archive / "TeslaCam/SavedClips/2024-01-01").exists())
        self.assertTrue(keep.exists())
        self.assertTrue((self.archive / "lost+found").exists())

    def test_repeated_runs_converge(self) -> None:
        for day in range(1, 10):
            self.archive_file(f"TeslaCam/{day}.mp4", f"2024-01-0{day} 00:00:00")
        disk = FakeDisk(self.archive, 2, 1)

        for _ in range(5):
            with mock.patch.object(retention, "disk_free_percent", side_effect=disk):
                report = retention.enforce(self.store, str(self.archive), 10, batch=3, recheck_every=1)
            if not report.incomplete and report.free_pct_after >= 10:
                break

        self.assertGreaterEqual(disk(str(self.archive)), 10)
        self.assertEqual(self.store.count(), 1)
        self.assertEqual([p for p, _ in self.store.oldest(5)], ["TeslaCam/9.mp4"])


if __name__ == "__main__":
    unittest.main()
