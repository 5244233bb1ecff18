"""Agent sessions on tmux, Windows Terminal tabs or background processes."""

from .base import BackendKind, SessionBackend, SessionInfo, SessionStore, clean_environment
from .manager import SessionManager, detect_backend
from .watcher import AcceptanceWatcher

__all__ = [
    "BackendKind",
    "SessionBackend",
    "SessionInfo",
    "SessionStore",
    "SessionManager",
    "AcceptanceWatcher",
    "clean_environment",
    "detect_backend",
]
