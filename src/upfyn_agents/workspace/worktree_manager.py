"""Git worktree manager for isolated task workspaces.

Each task that leaves the backlog gets its own checkout under
``<repo>/.upfyn/worktrees/<slug>`` on a fresh ``task/<slug>`` branch, so the
agent works in isolation while the user keeps their working directory
untouched. The slug is always :func:`upfyn_agents.core.task.slugify` of the
task title; creation, removal and session naming must agree on it.
"""

import logging
import shutil
from pathlib import Path
from typing import List, Optional, Sequence, Union

from ..core.task import branch_name_for
from ..errors.exceptions import WorktreeCreationFailure
from ..utils.subprocess_utils import run_command, run_git_command, SubprocessError
from ..utils.validators import validate_branch_name, validate_identifier
from . import git

logger = logging.getLogger(__name__)

ORCHESTRATION_DIR = ".upfyn"
WORKTREES_DIR = "worktrees"

# git worktree add checks out the whole tree; large repos need headroom
WORKTREE_ADD_TIMEOUT = 120
INIT_SCRIPT_TIMEOUT = 600


class WorktreeManager:
    """Create, seed and remove per-task git worktrees."""

    def worktree_path(self, repo_root: Path, slug: str) -> Path:
        return Path(repo_root) / ORCHESTRATION_DIR / WORKTREES_DIR / slug

    def worktree_exists(self, repo_root: Path, slug: str) -> bool:
        return self.worktree_path(repo_root, slug).exists()

    def create(self, repo_root: Path, slug: str) -> Path:
        """Create (or reuse) the worktree for `slug`.

        A directory that already holds a `.git` entry is a valid worktree and
        is returned unchanged. Anything else at that path is a leftover from
        an interrupted attempt and is cleared first.

        Raises:
            WorktreeCreationFailure: if git refuses to create the worktree
        """
        repo_root = Path(repo_root)
        slug = validate_identifier(slug, "slug")
        path = self.worktree_path(repo_root, slug)

        if (path / ".git").exists():
            logger.debug(f"Reusing existing worktree at {path}")
            return path

        if path.exists():
            logger.warning(f"Removing partial worktree directory: {path}")
            shutil.rmtree(path, ignore_errors=True)
        path.parent.mkdir(parents=True, exist_ok=True)

        branch = validate_branch_name(branch_name_for(slug))
        try:
            main_branch = git.detect_main_branch(repo_root)
        except SubprocessError as e:
            raise WorktreeCreationFailure(path, e.diagnostic) from e

        # Leftover branch from a previous failed attempt
        if git.branch_exists(repo_root, branch):
            warning = git.delete_branch(repo_root, branch, force=True)
            if warning:
                logger.debug(warning)

        try:
            run_git_command(
                ["worktree", "add", str(path), "-b", branch, main_branch],
                cwd=repo_root,
                timeout=WORKTREE_ADD_TIMEOUT,
            )
        except SubprocessError as e:
            raise WorktreeCreationFailure(path, e.diagnostic) from e

        logger.info(f"Created worktree {path} on {branch} from {main_branch}")
        return path

    def initialize(
        self,
        repo_root: Path,
        worktree_path: Path,
        copy_files: Union[str, Sequence[str], None] = None,
        init_command: Optional[str] = None,
    ) -> List[str]:
        """Seed a new worktree with untracked files and run the init command.

        Args:
            repo_root: Repository the files are copied from
            worktree_path: Destination worktree
            copy_files: Comma-separated string or list of repo-relative files
            init_command: Shell command run inside the worktree

        Returns:
            Non-fatal warnings (missing files, directories, copy or init
            failures). Never raises.
        """
        repo_root = Path(repo_root)
        worktree_path = Path(worktree_path)
        warnings: List[str] = []

        for name in _split_file_list(copy_files):
            warning = self._copy_into(repo_root, worktree_path, name)
            if warning:
                logger.warning(warning)
                warnings.append(warning)

        if init_command and init_command.strip():
            try:
                run_command(
                    init_command.strip(),
                    cwd=worktree_path,
                    shell=True,
                    timeout=INIT_SCRIPT_TIMEOUT,
                )
                logger.info(f"init_script finished in {worktree_path}")
            except SubprocessError as e:
                warning = f"init_script failed: {e.diagnostic}"
                logger.warning(warning)
                warnings.append(warning)

        return warnings

    def _copy_into(self, repo_root: Path, worktree_path: Path, name: str) -> Optional[str]:
        src = repo_root / name
        dst = worktree_path / name

        if not src.exists():
            return f"copy_files: '{name}' not found in project root, skipping"
        if src.is_dir():
            return f"copy_files: '{name}' is a directory, only individual files are supported"

        try:
            dst.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            return f"Failed to create directory for '{name}': {e}"

        try:
            shutil.copy2(src, dst)
        except OSError as e:
            return f"Failed to copy '{name}' to worktree: {e}"
        return None

    def remove(self, repo_root: Path, slug: str) -> Optional[str]:
        """Remove the worktree for `slug`, keeping its branch.

        Falls back to `git worktree prune` when removal fails. Returns a
        warning line if the worktree could not be removed; never raises.
        """
        repo_root = Path(repo_root)
        path = self.worktree_path(repo_root, slug)
        try:
            run_git_command(["worktree", "remove", str(path), "--force"], cwd=repo_root)
            logger.info(f"Removed worktree: {path}")
            return None
        except SubprocessError as e:
            remove_error = e.diagnostic

        try:
            run_git_command(["worktree", "prune"], cwd=repo_root)
        except SubprocessError as e:
            logger.debug(f"git worktree prune failed: {e.diagnostic}")

        if not path.exists():
            # Directory already gone, prune dropped git's record of it
            return None

        warning = f"Could not remove worktree {path}: {remove_error}"
        logger.warning(warning)
        return warning


def _split_file_list(copy_files: Union[str, Sequence[str], None]) -> List[str]:
    if not copy_files:
        return []
    if isinstance(copy_files, str):
        copy_files = copy_files.split(",")
    return [entry.strip() for entry in copy_files if entry and entry.strip()]
