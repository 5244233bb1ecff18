"""Session backend contract and on-disk session bookkeeping.

Every session gets a bookkeeping directory ``<config dir>/sessions/<name>/``:

- ``backend``: which backend created it (tmux, wt, shell)
- ``cmd``: the command line that was launched
- ``log``: captured output (file-backed backends only)
- ``pid``: OS process id (file-backed backends only)
- ``alive``: liveness marker (file-backed backends only)

The ``backend`` tag is what routes later capture/send/kill calls, so a session
is always addressed through the backend that created it.
"""

import logging
import os
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from ..errors.exceptions import SpawnFailure
from ..utils.atomic_io import atomic_write_text
from ..utils.validators import validate_identifier

logger = logging.getLogger(__name__)

# Variables that make an agent CLI think it is nested inside another agent
NESTED_AGENT_ENV_VARS = ("CLAUDECODE", "CLAUDE_CODE_SESSION")

DEFAULT_CAPTURE_LINES = 50


class BackendKind(str, Enum):
    TMUX = "tmux"
    WT = "wt"
    SHELL = "shell"


@dataclass
class SessionInfo:
    """One entry of the merged session listing."""
    name: str
    backend: BackendKind
    created: int = 0  # epoch seconds
    last_activity: int = 0
    alive: bool = True
    pid: Optional[int] = None


def clean_environment(base: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """Copy of the environment without the nested-agent guard variables."""
    env = dict(os.environ if base is None else base)
    for var in NESTED_AGENT_ENV_VARS:
        env.pop(var, None)
    return env


def quote_posix(arg: str) -> str:
    return "'" + arg.replace("'", "'\"'\"'") + "'"


def quote_windows(arg: str) -> str:
    """cmd.exe escapes an embedded quote by doubling it."""
    return '"' + arg.replace('"', '""') + '"'


def join_command(command: str, args: Sequence[str], windows: bool = False) -> str:
    """Append shell-quoted arguments to an already formed command line."""
    quote = quote_windows if windows else quote_posix
    return " ".join([command, *(quote(arg) for arg in args)])


def tail_lines(text: str, lines: int) -> str:
    """Last N lines of text, newest at the end."""
    if lines <= 0:
        return ""
    return "\n".join(text.split("\n")[-lines:])


class SessionStore:
    """Bookkeeping directories for sessions, keyed by session name."""

    BACKEND_FILE = "backend"
    CMD_FILE = "cmd"
    LOG_FILE = "log"
    PID_FILE = "pid"
    ALIVE_FILE = "alive"

    def __init__(self, root: Path):
        self.root = Path(root)

    def session_dir(self, name: str) -> Path:
        return self.root / name

    def ensure_dir(self, name: str) -> Path:
        path = self.session_dir(validate_identifier(name, "session name"))
        path.mkdir(parents=True, exist_ok=True)
        return path

    def has_dir(self, name: str) -> bool:
        return self.session_dir(name).is_dir()

    def file(self, name: str, key: str) -> Path:
        return self.session_dir(name) / key

    def write(self, name: str, key: str, value: str) -> None:
        self.ensure_dir(name)
        atomic_write_text(self.file(name, key), value)

    def read(self, name: str, key: str) -> Optional[str]:
        try:
            return self.file(name, key).read_text().strip()
        except (FileNotFoundError, NotADirectoryError):
            return None
        except OSError as e:
            logger.debug(f"Could not read {key} for session {name}: {e}")
            return None

    def discard(self, name: str, key: str) -> None:
        try:
            self.file(name, key).unlink()
        except FileNotFoundError:
            pass

    def read_pid(self, name: str) -> Optional[int]:
        raw = self.read(name, self.PID_FILE)
        if not raw:
            return None
        try:
            return int(raw)
        except ValueError:
            return None

    def is_marked_alive(self, name: str) -> bool:
        return self.file(name, self.ALIVE_FILE).exists()

    def backend_of(self, name: str) -> Optional[BackendKind]:
        raw = self.read(name, self.BACKEND_FILE)
        if not raw:
            return None
        try:
            return BackendKind(raw)
        except ValueError:
            logger.warning(f"Session {name} has unknown backend tag '{raw}'")
            return None

    def remove(self, name: str) -> Optional[str]:
        """Delete the bookkeeping directory. Returns a warning on failure."""
        path = self.session_dir(name)
        if not path.exists():
            return None
        try:
            shutil.rmtree(path)
        except OSError as e:
            message = f"Failed to remove session directory {path}: {e}"
            logger.warning(message)
            return message
        return None

    def list_sessions(self, backend: Optional[BackendKind] = None) -> List[SessionInfo]:
        """Sessions with a live marker, optionally filtered by backend tag."""
        results: List[SessionInfo] = []
        if not self.root.is_dir():
            return results

        now = int(datetime.now(UTC).timestamp())
        try:
            entries = sorted(self.root.iterdir())
        except OSError as e:
            logger.debug(f"Could not list {self.root}: {e}")
            return results

        for path in entries:
            if not path.is_dir():
                continue
            name = path.name
            kind = self.backend_of(name)
            if kind is None:
                continue
            if backend is not None and kind != backend:
                continue
            if not self.is_marked_alive(name):
                continue
            try:
                created = int(path.stat().st_ctime)
            except OSError:
                created = 0
            results.append(SessionInfo(
                name=name,
                backend=kind,
                created=created,
                last_activity=now,
                alive=True,
                pid=self.read_pid(name),
            ))
        return results


class SessionBackend(ABC):
    """One session substrate (multiplexer, terminal tab, background process).

    Only ``spawn`` raises. Capture, exists and listing degrade to empty/False
    because they run in polling loops.
    """

    kind: BackendKind
    supports_input: bool = False

    def __init__(self, store: SessionStore):
        self.store = store

    @abstractmethod
    def spawn(
        self,
        name: str,
        working_dir: Path,
        command: str,
        args: Sequence[str] = (),
    ) -> None:
        """Launch `command args...` in a new session.

        Raises:
            SpawnFailure: if the backend could not launch the process
        """

    @abstractmethod
    def session_exists(self, name: str) -> bool:
        pass

    @abstractmethod
    def capture_output(self, name: str, lines: int = DEFAULT_CAPTURE_LINES) -> str:
        pass

    def send_keys(self, name: str, text: str) -> bool:
        """Type text plus Enter into the session. False when unsupported."""
        return False

    @abstractmethod
    def kill(self, name: str) -> Optional[str]:
        """Terminate the session and drop its bookkeeping.

        Returns None, or a warning line when cleanup was incomplete.
        """

    def list_sessions(self) -> List[SessionInfo]:
        return self.store.list_sessions(self.kind)

    def attach(self, name: str) -> bool:
        """Hand the terminal over to the session. False when unsupported."""
        return False

    def _record(self, name: str, command_line: str) -> Path:
        """Create the bookkeeping directory for a session about to launch.

        Raises:
            SpawnFailure: if the name is unusable or the files can't be written
        """
        try:
            session_dir = self.store.ensure_dir(name)
        except ValueError as e:
            raise SpawnFailure(name, self.kind.value, str(e)) from e
        self._write_files(name, {
            SessionStore.CMD_FILE: command_line,
            SessionStore.BACKEND_FILE: self.kind.value,
        })
        return session_dir

    def _mark_started(self, name: str, pid: int) -> None:
        """Record the launched process and raise the alive marker.

        Raises:
            SpawnFailure: if the files can't be written
        """
        self._write_files(name, {
            SessionStore.PID_FILE: str(pid),
            SessionStore.ALIVE_FILE: "1",
        })

    def _write_files(self, name: str, files: Dict[str, str]) -> None:
        try:
            for key, value in files.items():
                self.store.write(name, key, value)
        except OSError as e:
            self.store.remove(name)
            raise SpawnFailure(name, self.kind.value, f"Could not write session files: {e}") from e
