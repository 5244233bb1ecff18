"""Fallback backend: a detached background process writing to a log file."""

import logging
import subprocess
import sys
import threading
from pathlib import Path
from typing import Optional, Sequence

from ..errors.exceptions import SpawnFailure
from ..utils.process_utils import is_process_alive, kill_process_tree
from .base import (
    DEFAULT_CAPTURE_LINES,
    BackendKind,
    SessionBackend,
    SessionStore,
    clean_environment,
    join_command,
    tail_lines,
)

logger = logging.getLogger(__name__)

IS_WINDOWS = sys.platform == "win32"


class ShellBackend(SessionBackend):
    """Detached `sh -c` (or `cmd /c`) process; output goes to the session log."""

    kind = BackendKind.SHELL

    def spawn(
        self,
        name: str,
        working_dir: Path,
        command: str,
        args: Sequence[str] = (),
    ) -> None:
        if self.session_exists(name):
            logger.info(f"Background session {name} already running, not spawning again")
            return

        full_cmd = join_command(command, args, windows=IS_WINDOWS)
        session_dir = self._record(name, full_cmd)
        log_path = session_dir / SessionStore.LOG_FILE
        try:
            log_file = open(log_path, "w")
        except OSError as e:
            self.store.remove(name)
            raise SpawnFailure(name, self.kind.value, f"Could not open {log_path}: {e}") from e

        argv = ["cmd", "/c", full_cmd] if IS_WINDOWS else ["sh", "-c", full_cmd]
        try:
            # Own process group so kill reaches the agent under the shell
            proc = subprocess.Popen(
                argv,
                cwd=working_dir,
                stdin=subprocess.DEVNULL,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                env=clean_environment(),
                start_new_session=not IS_WINDOWS,
            )
        except OSError as e:
            self.store.remove(name)
            raise SpawnFailure(name, self.kind.value, str(e)) from e
        finally:
            # Child inherited the handle
            log_file.close()

        try:
            self._mark_started(name, proc.pid)
        except SpawnFailure:
            kill_process_tree(proc.pid)
            raise

        reaper = threading.Thread(
            target=self._reap,
            args=(name, proc),
            name=f"reap-{name}",
            daemon=True,
        )
        reaper.start()
        logger.info(f"Spawned background session {name} with PID {proc.pid}")

    def _reap(self, name: str, proc: subprocess.Popen) -> None:
        """Clear the alive marker once the process exits."""
        returncode = proc.wait()
        logger.debug(f"Background session {name} exited with {returncode}")
        if self.store.has_dir(name):
            self.store.discard(name, SessionStore.ALIVE_FILE)

    def session_exists(self, name: str) -> bool:
        if self.store.backend_of(name) != self.kind:
            return False
        if not self.store.is_marked_alive(name):
            return False

        pid = self.store.read_pid(name)
        if pid is not None and is_process_alive(pid):
            return True

        # Process gone without us seeing it exit
        self.store.discard(name, SessionStore.ALIVE_FILE)
        return False

    def capture_output(self, name: str, lines: int = DEFAULT_CAPTURE_LINES) -> str:
        log_path = self.store.file(name, SessionStore.LOG_FILE)
        try:
            content = log_path.read_text(errors="replace")
        except OSError:
            return ""
        return tail_lines(content, lines)

    def kill(self, name: str) -> Optional[str]:
        pid = self.store.read_pid(name)
        # Without the marker the process already exited and the pid may be reused
        if pid is not None and self.store.is_marked_alive(name):
            if not kill_process_tree(pid):
                logger.debug(f"Process {pid} for session {name} already gone")
        return self.store.remove(name)
