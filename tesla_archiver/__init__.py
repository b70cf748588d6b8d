"""Snapshot-based incremental archiver for dashcam USB volumes."""

VERSION = "1.0"
SYSTEM_NAME = "TeslaCam Archiver (LVM snapshot -> archive)"
