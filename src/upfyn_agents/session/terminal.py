"""Windows Terminal backend: each session opens in its own terminal tab.

The tab is owned by the user's terminal, so there is no way to capture its
screen or type into it. We keep a wrapper script and a log file in the
session directory and report liveness from the marker file.
"""

import logging
import subprocess
import sys
from pathlib import Path
from typing import Optional, Sequence

from ..errors.exceptions import SpawnFailure
from ..utils.process_utils import kill_process_tree
from ..utils.subprocess_utils import check_command_exists
from .base import (
    DEFAULT_CAPTURE_LINES,
    NESTED_AGENT_ENV_VARS,
    BackendKind,
    SessionBackend,
    SessionStore,
    clean_environment,
    join_command,
    tail_lines,
)

logger = logging.getLogger(__name__)

IS_WINDOWS = sys.platform == "win32"

WRAPPER_FILE = "run.cmd"
SEPARATE_TAB_HINT = (
    "  Session running in a separate terminal tab.\n"
    "  Switch to that tab to interact with the agent.\n"
)


def wt_available() -> bool:
    return IS_WINDOWS and check_command_exists("wt.exe")


def build_wrapper_script(working_dir: Path, full_cmd: str) -> str:
    """cmd.exe script that clears the nested-agent guard and runs the agent."""
    win_dir = str(working_dir).replace("/", "\\")
    label = full_cmd.split('"')[0].strip()
    lines = ["@echo off"]
    lines += [f"set {var}=" for var in NESTED_AGENT_ENV_VARS]
    lines += [
        f'cd /d "{win_dir}"',
        "echo.",
        f"echo [Upfyn Agents] Running: {label}...",
        "echo.",
        full_cmd,
        "echo.",
        "echo [Upfyn Agents] Agent session ended.",
        "pause",
    ]
    return "\r\n".join(lines) + "\r\n"


class WindowsTerminalBackend(SessionBackend):
    """Opens `wt.exe -w 0 nt` tabs, falling back to `cmd /c start`."""

    kind = BackendKind.WT

    def spawn(
        self,
        name: str,
        working_dir: Path,
        command: str,
        args: Sequence[str] = (),
    ) -> None:
        if self.session_exists(name):
            logger.info(f"Terminal session {name} already open, not spawning again")
            return

        full_cmd = join_command(command, args, windows=True)
        session_dir = self._record(name, full_cmd)
        wrapper = session_dir / WRAPPER_FILE
        try:
            (session_dir / SessionStore.LOG_FILE).write_text("")
            wrapper.write_text(build_wrapper_script(working_dir, full_cmd))
        except OSError as e:
            self.store.remove(name)
            raise SpawnFailure(name, self.kind.value, f"Could not write {wrapper}: {e}") from e
        quoted_wrapper = f'"{wrapper}"'

        popen_kwargs = dict(
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            env=clean_environment(),
        )
        try:
            proc = subprocess.Popen(
                ["wt.exe", "-w", "0", "nt", "--title", name, "--", "cmd", "/c", quoted_wrapper],
                **popen_kwargs,
            )
        except OSError as e:
            logger.warning(f"wt.exe failed for {name} ({e}), opening a cmd window instead")
            try:
                proc = subprocess.Popen(
                    ["cmd", "/c", "start", "", "cmd", "/c", quoted_wrapper],
                    **popen_kwargs,
                )
            except OSError as fallback_error:
                self.store.remove(name)
                raise SpawnFailure(name, self.kind.value, str(fallback_error)) from fallback_error

        try:
            self._mark_started(name, proc.pid)
        except SpawnFailure:
            kill_process_tree(proc.pid)
            raise
        logger.info(f"Opened terminal tab for session {name}")

    def session_exists(self, name: str) -> bool:
        if self.store.backend_of(name) != self.kind:
            return False
        return self.store.is_marked_alive(name)

    def capture_output(self, name: str, lines: int = DEFAULT_CAPTURE_LINES) -> str:
        log_path = self.store.file(name, SessionStore.LOG_FILE)
        if not log_path.exists():
            return SEPARATE_TAB_HINT
        try:
            return tail_lines(log_path.read_text(errors="replace"), lines)
        except OSError:
            return ""

    def kill(self, name: str) -> Optional[str]:
        pid = self.store.read_pid(name)
        # Without the marker the process already exited and the pid may be reused
        if pid is not None and self.store.is_marked_alive(name):
            if not kill_process_tree(pid):
                logger.debug(f"Terminal process {pid} for session {name} already gone")
        return self.store.remove(name)
