"""Small git queries used by the orchestrator and the CLI."""

import logging
from pathlib import Path
from typing import Optional

from ..utils.subprocess_utils import run_git_command, SubprocessError

logger = logging.getLogger(__name__)


def is_git_repo(path: Path) -> bool:
    try:
        result = run_git_command(["rev-parse", "--git-dir"], cwd=path, check=False, timeout=10)
    except SubprocessError:
        return False
    return result.returncode == 0


def repo_root(path: Path) -> Path:
    """Top-level directory of the repository containing `path`.

    Raises:
        SubprocessError: if `path` is not inside a repository
    """
    result = run_git_command(["rev-parse", "--show-toplevel"], cwd=path, timeout=10)
    return Path(result.stdout.strip())


def current_branch(path: Path) -> str:
    result = run_git_command(["rev-parse", "--abbrev-ref", "HEAD"], cwd=path, timeout=10)
    return result.stdout.strip()


def branch_exists(path: Path, branch: str) -> bool:
    try:
        result = run_git_command(["rev-parse", "--verify", "--quiet", branch], cwd=path, check=False, timeout=10)
    except SubprocessError:
        return False
    return result.returncode == 0


def detect_main_branch(path: Path) -> str:
    """`main`, else `master`, else whatever HEAD is on."""
    for candidate in ("main", "master"):
        if branch_exists(path, candidate):
            return candidate
    return current_branch(path)


def diff_stat(path: Path, base: str, target: str) -> str:
    result = run_git_command(["diff", base, target, "--stat"], cwd=path)
    return result.stdout


def diff_full(path: Path, base: str, target: str) -> str:
    result = run_git_command(["diff", base, target], cwd=path)
    return result.stdout


def delete_branch(path: Path, branch: str, force: bool = False) -> Optional[str]:
    """Delete a local branch. Returns a warning instead of raising."""
    flag = "-D" if force else "-d"
    try:
        run_git_command(["branch", flag, branch], cwd=path)
    except SubprocessError as e:
        logger.debug(f"git branch {flag} {branch} failed: {e.diagnostic}")
        return f"Could not delete branch {branch}: {e.diagnostic}"
    return None
