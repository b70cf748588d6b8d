import logging
import subprocess

log = logging.getLogger(__name__)


def run_command(cmd, sudo=False):
    """
    Runs an external command and returns the CompletedProcess.
    A missing binary is reported as exit code 127 rather than raised, so
    callers can treat it like any other failed command.
    """
    if sudo:
        cmd = ["sudo", "-n"] + list(cmd)
    log.debug("[EXEC] %s", " ".join(cmd))
    try:
        return subprocess.run(cmd, capture_output=True, text=True)
    except FileNotFoundError as e:
        return subprocess.CompletedProcess(cmd, 127, stdout="", stderr=str(e))


def last_line(text):
    lines = (text or "").strip().splitlines()
    return lines[-1] if lines else "no output"
