"""Shared test fixtures for unit tests."""

import shutil
import subprocess
import threading
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from upfyn_agents.core.config import clear_config_cache
from upfyn_agents.session.base import BackendKind, SessionInfo


@pytest.fixture(autouse=True)
def _fresh_config_cache():
    clear_config_cache()
    yield
    clear_config_cache()


def git(cwd: Path, *args: str) -> str:
    """Run git in `cwd` and return stdout."""
    result = subprocess.run(
        ["git", *args], cwd=cwd, capture_output=True, text=True, check=True
    )
    return result.stdout


@pytest.fixture
def git_repo(tmp_path):
    """A repository named `acme` with one commit on `main`."""
    if shutil.which("git") is None:
        pytest.skip("git not installed")
    repo = tmp_path / "acme"
    repo.mkdir()
    git(repo, "init")
    git(repo, "config", "user.email", "test@example.com")
    git(repo, "config", "user.name", "Test User")
    git(repo, "config", "commit.gpgsign", "false")
    (repo / "README.md").write_text("# acme\n")
    git(repo, "add", "README.md")
    git(repo, "commit", "-m", "initial")
    git(repo, "branch", "-M", "main")
    return repo


class FakeSessions:
    """Stand-in for SessionManager that records every call."""

    def __init__(self, supports_input: bool = True, fail_spawn: Optional[Exception] = None):
        self._supports_input = supports_input
        self.fail_spawn = fail_spawn
        self.alive: Dict[str, Path] = {}
        self.output: Dict[str, str] = {}
        self.commands: Dict[str, str] = {}
        self.sent: List[tuple] = []
        self.killed: List[str] = []
        self.kill_warnings: List[str] = []
        self._lifetimes: Dict[str, threading.Event] = {}

    def spawn(self, name, working_dir, command, args=()):
        if self.fail_spawn is not None:
            raise self.fail_spawn
        self.alive[name] = Path(working_dir)
        self.commands[name] = command
        self.output.setdefault(name, "")
        return BackendKind.TMUX

    def session_exists(self, name):
        return name in self.alive

    def supports_input(self, name=None):
        return self._supports_input

    def capture_output(self, name, lines=50):
        return self.output.get(name, "")

    def send_keys(self, name, text):
        if not self._supports_input or name not in self.alive:
            return False
        self.sent.append((name, text))
        return True

    def kill(self, name):
        self.lifetime(name).set()
        self.alive.pop(name, None)
        self.killed.append(name)
        return list(self.kill_warnings)

    def list_sessions(self):
        return [SessionInfo(name=name, backend=BackendKind.TMUX) for name in self.alive]

    def attach(self, name):
        return name in self.alive

    def lifetime(self, name):
        return self._lifetimes.setdefault(name, threading.Event())


@pytest.fixture
def run_git():
    """The git helper, for tests that need extra repository setup."""
    return git


@pytest.fixture
def fake_sessions():
    return FakeSessions()


@pytest.fixture
def make_sessions():
    """Factory for FakeSessions with custom input support or spawn failure."""
    return FakeSessions
