"""Uniform session API over the tmux, Windows Terminal and shell backends.

The active backend (used only for new spawns) is chosen once by
:func:`detect_backend` and handed to :class:`SessionManager`. Every later
operation on an existing session is routed by the backend tag recorded in its
bookkeeping directory, so a session is always addressed through the backend
that created it, even after the active backend changes between runs.
"""

import logging
import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from ..utils.error_handling import log_and_ignore
from .base import (
    DEFAULT_CAPTURE_LINES,
    BackendKind,
    SessionBackend,
    SessionInfo,
    SessionStore,
)
from .shell import ShellBackend
from .terminal import WindowsTerminalBackend, wt_available
from .tmux import TmuxBackend, tmux_available

logger = logging.getLogger(__name__)


def detect_backend(
    tmux_probe: Callable[[], bool] = tmux_available,
    wt_probe: Callable[[], bool] = wt_available,
) -> BackendKind:
    """Richest backend this host offers: tmux, then Windows Terminal, then shell."""
    if tmux_probe():
        return BackendKind.TMUX
    if wt_probe():
        return BackendKind.WT
    return BackendKind.SHELL


class SessionManager:
    """Spawn, inspect and tear down agent sessions."""

    def __init__(
        self,
        store: SessionStore,
        active: BackendKind,
        backends: Optional[Dict[BackendKind, SessionBackend]] = None,
    ):
        self.store = store
        self.active = BackendKind(active)
        self.backends: Dict[BackendKind, SessionBackend] = backends or {
            BackendKind.TMUX: TmuxBackend(store),
            BackendKind.WT: WindowsTerminalBackend(store),
            BackendKind.SHELL: ShellBackend(store),
        }
        # Set when a session is killed; watchers polling it stop on this
        self._lifetimes: Dict[str, threading.Event] = {}
        self._lock = threading.Lock()

    @classmethod
    def for_config_dir(
        cls,
        config_dir: Path,
        override: Optional[BackendKind] = None,
    ) -> "SessionManager":
        """Manager with bookkeeping under <config_dir>/sessions."""
        active = BackendKind(override) if override else detect_backend()
        logger.debug(f"Session backend: {active.value}")
        return cls(SessionStore(Path(config_dir) / "sessions"), active)

    @property
    def active_backend(self) -> SessionBackend:
        return self.backends[self.active]

    def backend_for(self, name: str) -> Optional[BackendKind]:
        """Backend that owns an existing session, or None if unknown."""
        recorded = self.store.backend_of(name)
        if recorded is not None:
            return recorded
        if self.backends[BackendKind.TMUX].session_exists(name):
            return BackendKind.TMUX
        return None

    def supports_input(self, name: Optional[str] = None) -> bool:
        """Whether send_keys reaches the session (or new sessions, if no name)."""
        kind = self.backend_for(name) if name else self.active
        if kind is None:
            return False
        return self.backends[kind].supports_input

    def spawn(
        self,
        name: str,
        working_dir: Path,
        command: str,
        args: Sequence[str] = (),
    ) -> BackendKind:
        """Launch a session on the active backend.

        Raises:
            SpawnFailure: if the backend could not launch the process
        """
        self.active_backend.spawn(name, Path(working_dir), command, args)
        with self._lock:
            self._lifetimes[name] = threading.Event()
        return self.active

    def session_exists(self, name: str) -> bool:
        """True if any backend reports the session alive."""
        return any(backend.session_exists(name) for backend in self.backends.values())

    def capture_output(self, name: str, lines: int = DEFAULT_CAPTURE_LINES) -> str:
        kind = self.backend_for(name)
        if kind is not None:
            return self.backends[kind].capture_output(name, lines)
        return (
            self.backends[BackendKind.TMUX].capture_output(name, lines)
            or self.backends[BackendKind.SHELL].capture_output(name, lines)
        )

    def send_keys(self, name: str, text: str) -> bool:
        """Type text into the session. False if its backend has no input channel."""
        kind = self.backend_for(name)
        if kind is None or not self.backends[kind].supports_input:
            logger.debug(f"send_keys to {name} skipped: backend {kind} has no input channel")
            return False
        return self.backends[kind].send_keys(name, text)

    def kill(self, name: str) -> List[str]:
        """Terminate the session on every backend that may hold it.

        Returns warnings for incomplete cleanup; never raises.
        """
        self.lifetime(name).set()

        warnings = []
        # File-backed backends first: they need the recorded pid, and every
        # backend's kill removes the bookkeeping directory
        kinds = []
        if self.store.has_dir(name):
            kinds += [BackendKind.WT, BackendKind.SHELL]
        kinds.append(BackendKind.TMUX)
        for kind in kinds:
            try:
                warning = self.backends[kind].kill(name)
            except Exception as e:
                warning = log_and_ignore(
                    e, f"Failed to kill session {name} via {kind.value}", logger_instance=logger
                )
            if warning:
                warnings.append(warning)

        with self._lock:
            self._lifetimes.pop(name, None)
        return warnings

    def list_sessions(self) -> List[SessionInfo]:
        """tmux server sessions plus file-backed sessions, de-duplicated by name."""
        sessions = list(self.backends[BackendKind.TMUX].list_sessions())
        seen = {s.name for s in sessions}
        for info in self.store.list_sessions():
            if info.name not in seen:
                sessions.append(info)
                seen.add(info.name)
        return sessions

    def attach(self, name: str) -> bool:
        kind = self.backend_for(name)
        if kind is None:
            return False
        return self.backends[kind].attach(name)

    def lifetime(self, name: str) -> threading.Event:
        """Event that is set once the session is killed."""
        with self._lock:
            event = self._lifetimes.get(name)
            if event is None:
                event = threading.Event()
                self._lifetimes[name] = event
            return event
