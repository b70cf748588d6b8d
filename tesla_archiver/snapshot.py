"""
LVM copy-on-write snapshot lifecycle for the live USB volume.

The external device keeps writing to the origin LV while we read; the
snapshot gives a frozen view without pausing it. Teardown is idempotent so it
can run from recovery, from the normal path and from the finalizer.
"""
import os
import logging
from collections import namedtuple

from tesla_archiver.errors import SnapshotCreateError, MountError, SnapshotError, SnapshotExhausted
from tesla_archiver.shell import run_command, last_line

log = logging.getLogger(__name__)

# noatime keeps the read pass from dirtying FAT metadata (and COW space)
MOUNT_OPTIONS = "ro,noatime"

SnapshotHandle = namedtuple("SnapshotHandle", ["vg_name", "name", "device"])


class SnapshotManager:
    def __init__(self, settings):
        self.settings = settings
        self.sudo = settings.use_sudo

    def handle(self):
        """The well-known handle; at most one snapshot exists under this name."""
        vg, name = self.settings.vg_name, self.settings.snap_name
        return SnapshotHandle(vg, name, f"/dev/{vg}/{name}")

    def exists(self, handle=None):
        handle = handle or self.handle()
        res = run_command(["lvs", f"{handle.vg_name}/{handle.name}"], sudo=self.sudo)
        return res.returncode == 0

    def detect_orphan(self):
        """Returns the handle if a snapshot survived a previous crashed run."""
        handle = self.handle()
        if self.exists(handle):
            return handle
        return None

    def is_mounted(self, mount_point=None):
        return os.path.ismount(mount_point or self.settings.snap_mount)

    def create(self, source_device=None, size=None):
        source_device = source_device or self.settings.source_device
        size = size or self.settings.snap_size
        handle = self.handle()

        log.info("[SNAPSHOT] Creating %s from %s (COW space: %s)", handle.device, source_device, size)
        res = run_command(
            ["lvcreate", "-L", size, "-s", "-n", handle.name, source_device],
            sudo=self.sudo,
        )
        if res.returncode != 0:
            raise SnapshotCreateError(
                f"lvcreate failed (exit {res.returncode}): {last_line(res.stderr)}"
            )
        log.info("[OK] Snapshot created")
        return handle

    def ensure_mount_point_free(self, mount_point=None):
        """Pre-flight: something left mounted on the snapshot path blocks the run."""
        mount_point = mount_point or self.settings.snap_mount
        if not self.is_mounted(mount_point):
            return
        log.warning("[WARN] Mount point %s is already in use, unmounting", mount_point)
        run_command(["umount", "-l", mount_point], sudo=self.sudo)
        if self.is_mounted(mount_point):
            raise MountError(f"{mount_point} is still mounted after lazy unmount")
        log.info("[OK] Unmounted %s", mount_point)

    def mount(self, handle, mount_point=None, read_only=True):
        mount_point = mount_point or self.settings.snap_mount
        os.makedirs(mount_point, exist_ok=True)

        options = MOUNT_OPTIONS if read_only else "noatime"
        log.info("[SNAPSHOT] Mounting %s on %s (%s)", handle.device, mount_point, options)
        res = run_command(["mount", "-o", options, handle.device, mount_point], sudo=self.sudo)
        if res.returncode != 0:
            raise MountError(f"mount failed (exit {res.returncode}): {last_line(res.stderr)}")
        log.info("[OK] Snapshot mounted")

    def unmount(self, mount_point=None):
        """Plain umount first, lazy umount if the mount is busy. Returns success."""
        mount_point = mount_point or self.settings.snap_mount
        if not self.is_mounted(mount_point):
            return True

        res = run_command(["umount", mount_point], sudo=self.sudo)
        if res.returncode == 0:
            return True

        log.warning("[WARN] umount %s failed (%s), retrying lazily", mount_point, last_line(res.stderr))
        res = run_command(["umount", "-l", mount_point], sudo=self.sudo)
        if res.returncode != 0:
            log.warning("[WARN] Lazy umount failed: %s", last_line(res.stderr))
            return False
        return True

    def destroy(self, handle=None, mount_point=None):
        """
        Unmounts and removes the snapshot. Safe on an already-unmounted or
        already-removed snapshot. Secondary failures are logged, never raised.
        """
        handle = handle or self.handle()
        clean = self.unmount(mount_point)

        if not self.exists(handle):
            return clean

        log.info("[SNAPSHOT] Removing %s", handle.device)
        res = run_command(["lvremove", "-f", handle.device], sudo=self.sudo)
        if res.returncode != 0:
            log.warning("[WARN] lvremove failed (exit %s): %s", res.returncode, last_line(res.stderr))
            return False
        return clean

    def check_valid(self, handle=None):
        """
        Raises SnapshotExhausted once the COW area has overflowed. LVM then
        marks the snapshot invalid and every further read fails.
        """
        handle = handle or self.handle()
        res = run_command(
            ["lvs", "--noheadings", "-o", "lv_attr,data_percent", f"{handle.vg_name}/{handle.name}"],
            sudo=self.sudo,
        )
        if res.returncode != 0:
            raise SnapshotError(f"Snapshot {handle.device} disappeared: {last_line(res.stderr)}")

        fields = res.stdout.split()
        attr = fields[0] if fields else ""
        usage = parse_percent(fields[1]) if len(fields) > 1 else 0.0

        # 5th lv_attr character is the state; 'I' = invalid snapshot
        if len(attr) > 4 and attr[4] == "I":
            raise SnapshotExhausted(f"Snapshot {handle.device} is invalid (COW space exhausted)")
        if usage >= 100.0:
            raise SnapshotExhausted(f"Snapshot {handle.device} COW space is full ({usage:.1f}%)")
        return usage


def parse_percent(value):
    try:
        return float(value.replace(",", "."))
    except ValueError:
        return 0.0
