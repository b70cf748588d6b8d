import tempfile
import unittest
from pathlib import Path

from tesla_archiver.lock import InstanceLock


class InstanceLockTests(unittest.TestCase):
    def test_second_holder_is_refused_until_release(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = str(Path(tmp) / "lock" / "archive.lock")
            first = InstanceLock(path)
            second = InstanceLock(path)

            self.assertTrue(first.acquire())
            self.assertTrue(first.held)
            self.assertFalse(second.acquire())
            self.assertFalse(second.held)

            first.release()
            self.assertTrue(second.acquire())
            second.release()

    def test_release_is_idempotent(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            lock = InstanceLock(str(Path(tmp) / "archive.lock"))
            lock.release()
            with lock:
                self.assertTrue(lock.acquire())
            self.assertFalse(lock.held)
            lock.release()


if __name__ == "__main__":
    unittest.main()
