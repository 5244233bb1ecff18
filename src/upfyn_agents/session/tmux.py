"""tmux backend: sessions live on a dedicated tmux server (``-L upfyn``)."""

import logging
from pathlib import Path
from typing import List, Optional, Sequence

from ..errors.exceptions import SpawnFailure
from ..utils.subprocess_utils import run_command, SubprocessError
from .base import (
    DEFAULT_CAPTURE_LINES,
    NESTED_AGENT_ENV_VARS,
    BackendKind,
    SessionBackend,
    SessionInfo,
    clean_environment,
    join_command,
)

logger = logging.getLogger(__name__)

SERVER_NAME = "upfyn"

TMUX_TIMEOUT = 10
LIST_FORMAT = "#{session_name}\t#{session_activity}\t#{session_created}"


def session_target(name: str) -> str:
    """Exact-match session target; a bare name also matches by prefix or pattern."""
    return f"={name}"


def pane_target(name: str) -> str:
    """Active pane of exactly this session."""
    return f"={name}:"


def tmux_available() -> bool:
    """True if the tmux binary answers a version probe."""
    try:
        result = run_command(["tmux", "-V"], check=False, timeout=5)
    except SubprocessError:
        return False
    return result.returncode == 0


class TmuxBackend(SessionBackend):
    """Persistent multiplexer sessions with live capture and input."""

    kind = BackendKind.TMUX
    supports_input = True

    def _tmux(self, *args: str, check: bool = False, timeout: Optional[int] = TMUX_TIMEOUT):
        return run_command(
            ["tmux", "-L", SERVER_NAME, *args],
            check=check,
            timeout=timeout,
            env=clean_environment(),
        )

    def spawn(
        self,
        name: str,
        working_dir: Path,
        command: str,
        args: Sequence[str] = (),
    ) -> None:
        if self.session_exists(name):
            logger.info(f"tmux session {name} already running, not spawning again")
            return

        shell_command = join_command(command, args)
        self._record(name, shell_command)
        # The tmux server may predate us and carry the variables in its own env
        clean_cmd = f"unset {' '.join(NESTED_AGENT_ENV_VARS)} 2>/dev/null; {shell_command}"
        try:
            self._tmux(
                "new-session", "-d",
                "-s", name,
                "-c", str(working_dir),
                "sh", "-c", clean_cmd,
                check=True,
            )
        except SubprocessError as e:
            self.store.remove(name)
            raise SpawnFailure(name, self.kind.value, e.diagnostic) from e

        logger.info(f"Spawned tmux session {name} in {working_dir}")

    def session_exists(self, name: str) -> bool:
        try:
            result = self._tmux("has-session", "-t", session_target(name))
        except SubprocessError:
            return False
        return result.returncode == 0

    def capture_output(self, name: str, lines: int = DEFAULT_CAPTURE_LINES) -> str:
        try:
            result = self._tmux("capture-pane", "-t", pane_target(name), "-p", "-S", f"-{lines}")
        except SubprocessError:
            return ""
        if result.returncode != 0:
            return ""
        return result.stdout

    def send_keys(self, name: str, text: str) -> bool:
        try:
            result = self._tmux("send-keys", "-t", pane_target(name), text, "Enter")
        except SubprocessError as e:
            logger.debug(f"send-keys to {name} failed: {e}")
            return False
        return result.returncode == 0

    def kill(self, name: str) -> Optional[str]:
        try:
            result = self._tmux("kill-session", "-t", session_target(name))
            if result.returncode != 0:
                logger.debug(f"tmux kill-session {name}: {result.stderr.strip()}")
        except SubprocessError as e:
            logger.debug(f"tmux kill-session {name} failed: {e}")
        return self.store.remove(name)

    def list_sessions(self) -> List[SessionInfo]:
        try:
            result = self._tmux("list-sessions", "-F", LIST_FORMAT)
        except SubprocessError:
            return []
        if result.returncode != 0:
            # No server running yet
            return []

        sessions = []
        for line in result.stdout.strip().splitlines():
            if not line:
                continue
            parts = line.split("\t")
            sessions.append(SessionInfo(
                name=parts[0],
                backend=self.kind,
                last_activity=_to_int(parts[1]) if len(parts) > 1 else 0,
                created=_to_int(parts[2]) if len(parts) > 2 else 0,
            ))
        return sessions

    def attach(self, name: str) -> bool:
        try:
            result = run_command(
                ["tmux", "-L", SERVER_NAME, "attach", "-t", session_target(name)],
                capture_output=False,
                check=False,
                timeout=None,
            )
        except SubprocessError as e:
            logger.warning(f"Could not attach to {name}: {e}")
            return False
        return result.returncode == 0


def _to_int(value: str) -> int:
    try:
        return int(value)
    except ValueError:
        return 0
