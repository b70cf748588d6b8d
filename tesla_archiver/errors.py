"""Failure taxonomy for an archive run.

Fatal conditions derive from SnapshotError. Everything else is either a clean
skip or a per-item problem that the next scheduled run retries.
"""


class ArchiverError(Exception):
    pass


class ConfigError(ArchiverError):
    pass


class PreconditionSkip(ArchiverError):
    """Run skipped cleanly (e.g. disk too hot). Not an error."""


class SnapshotError(ArchiverError):
    pass


class SnapshotCreateError(SnapshotError):
    pass


class MountError(SnapshotError):
    pass


class SnapshotExhausted(SnapshotError):
    """Copy-on-write space ran out while the run was reading the snapshot."""


class IndexCorruption(ArchiverError):
    pass


class CopyFailure(ArchiverError):
    pass


class RunInterrupted(ArchiverError):
    def __init__(self, signum):
        super().__init__(f"Interrupted by signal {signum}")
        self.signum = signum
