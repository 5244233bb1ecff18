"""Process management utilities for detached agent processes."""

import logging
import os
import signal
import subprocess
import sys

logger = logging.getLogger(__name__)

IS_WINDOWS = sys.platform == "win32"


def kill_process_tree(pid: int, sig: int = signal.SIGTERM) -> bool:
    """Signal the process group led by ``pid``.

    Sessions spawned with start_new_session=True lead their own process group,
    so killpg reaches all child processes (e.g. the agent CLI under sh -c).
    A pid that no longer leads its group has been reused by an unrelated
    process and is left alone. On Windows the whole tree is terminated with
    taskkill.

    Returns:
        True if a signal was delivered, False otherwise
    """
    if IS_WINDOWS:
        result = subprocess.run(
            ["taskkill", "/PID", str(pid), "/T", "/F"],
            capture_output=True,
            text=True,
            check=False,
        )
        return result.returncode == 0

    if pid <= 0 or not is_group_leader(pid):
        logger.debug(f"PID {pid} is gone or no longer leads its process group, not signalling")
        return False
    try:
        os.killpg(pid, sig)
        return True
    except (ProcessLookupError, PermissionError):
        return False


def is_group_leader(pid: int) -> bool:
    """True if the process exists and is the leader of its own process group."""
    try:
        return os.getpgid(pid) == pid
    except (ProcessLookupError, PermissionError):
        return False


def is_process_alive(pid: int) -> bool:
    """Check whether a process with this PID is still running."""
    if pid <= 0:
        return False

    if IS_WINDOWS:
        result = subprocess.run(
            ["tasklist", "/FI", f"PID eq {pid}", "/NH"],
            capture_output=True,
            text=True,
            check=False,
        )
        return str(pid) in result.stdout

    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by another user
        return True
    return True
