import re
import shutil
import logging

from tesla_archiver.shell import run_command

log = logging.getLogger(__name__)


def backing_disk(path):
    """Whole-disk device behind path (/dev/sda1 -> /dev/sda), or None."""
    res = run_command(["df", "-P", path])
    if res.returncode != 0:
        return None
    lines = res.stdout.strip().splitlines()
    if len(lines) < 2:
        return None
    device = lines[1].split()[0]
    if not device.startswith("/dev/"):
        return None
    # mmcblk0p1 / nvme0n1p1 carry a 'p' before the partition number
    if re.search(r"(mmcblk\d+|nvme\d+n\d+)$", device):
        return device
    if re.search(r"\d+p\d+$", device):
        return re.sub(r"p\d+$", "", device)
    return re.sub(r"\d+$", "", device)


def parse_smart_temperature(output):
    """RAW_VALUE (10th column) of the first Temperature attribute row."""
    for line in output.splitlines():
        if "temperature" not in line.lower():
            continue
        fields = line.split()
        if len(fields) >= 10 and fields[9].isdigit():
            return int(fields[9])
        # NVMe style: "Temperature:    38 Celsius"
        match = re.search(r"Temperature:\s+(\d+)", line)
        if match:
            return int(match.group(1))
    return None


def read_disk_temperature(path, sudo=False):
    """
    Disk temperature in degrees C for the disk holding path, or None when
    smartctl is missing or the device does not report one.
    """
    if shutil.which("smartctl") is None:
        log.info("[WARN] smartctl not available for temperature check, continuing anyway")
        return None

    device = backing_disk(path)
    if not device:
        log.info("[WARN] Could not determine disk device for temperature check")
        return None

    res = run_command(["smartctl", "-A", device], sudo=sudo)
    temp = parse_smart_temperature(res.stdout or "")
    if temp is None or temp == 0:
        log.info("[WARN] Could not determine disk temperature, continuing anyway")
        return None
    log.info("[TEMP] Current disk temperature: %d C", temp)
    return temp
