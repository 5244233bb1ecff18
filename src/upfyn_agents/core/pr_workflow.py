"""Pull request creation and status lookup through the gh CLI.

Status lookups are used while deciding whether a task can be closed, so they
never raise: anything the CLI can't answer is reported as ``unknown``.
Creation is a user action and surfaces every failure as PrCreationFailure.
"""

import json
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from ..errors.exceptions import PrCreationFailure
from ..utils.subprocess_utils import run_command, run_git_command, SubprocessError

logger = logging.getLogger(__name__)


class PullRequestState(str, Enum):
    OPEN = "open"
    MERGED = "merged"
    CLOSED = "closed"
    UNKNOWN = "unknown"


_STATE_MAP = {
    "OPEN": PullRequestState.OPEN,
    "MERGED": PullRequestState.MERGED,
    "CLOSED": PullRequestState.CLOSED,
}


@dataclass
class PullRequest:
    number: int
    url: str


class PullRequestWorkflow:
    """Thin wrapper over `git push` and `gh pr`."""

    STATUS_TIMEOUT = 30
    PUSH_TIMEOUT = 120
    CREATE_TIMEOUT = 60

    def get_status(self, repo_root: Path, pr_number: int) -> PullRequestState:
        """Live state of a PR; `unknown` on any CLI or parse failure."""
        try:
            result = run_command(
                ["gh", "pr", "view", str(pr_number), "--json", "state"],
                cwd=repo_root,
                check=False,
                timeout=self.STATUS_TIMEOUT,
            )
        except SubprocessError as e:
            logger.debug(f"gh pr view {pr_number} failed: {e}")
            return PullRequestState.UNKNOWN

        if result.returncode != 0:
            logger.debug(f"gh pr view {pr_number} exited {result.returncode}: {result.stderr.strip()}")
            return PullRequestState.UNKNOWN

        try:
            data = json.loads(result.stdout)
            state = str(data.get("state") or "").upper()
        except (json.JSONDecodeError, TypeError, AttributeError):
            return PullRequestState.UNKNOWN

        return _STATE_MAP.get(state, PullRequestState.UNKNOWN)

    def create(
        self,
        repo_root: Path,
        title: str,
        body: str,
        head_branch: str,
    ) -> PullRequest:
        """Push the branch upstream and open a PR for it.

        Raises:
            PrCreationFailure: if the push or the PR request fails
        """
        try:
            run_git_command(
                ["push", "-u", "origin", head_branch],
                cwd=repo_root,
                timeout=self.PUSH_TIMEOUT,
            )
        except SubprocessError as e:
            raise PrCreationFailure("push", e.diagnostic) from e

        try:
            result = run_command(
                [
                    "gh", "pr", "create",
                    "--title", title,
                    "--body", body,
                    "--head", head_branch,
                ],
                cwd=repo_root,
                timeout=self.CREATE_TIMEOUT,
            )
        except SubprocessError as e:
            raise PrCreationFailure("create", e.diagnostic) from e

        url = self._extract_pr_url(result.stdout)
        number = self._extract_pr_number(url)
        logger.info(f"Opened PR #{number} for {head_branch}: {url}")
        return PullRequest(number=number, url=url)

    @staticmethod
    def _extract_pr_url(output: str) -> str:
        """gh prints progress lines before the URL; the URL is the last line."""
        lines = [line.strip() for line in output.strip().splitlines() if line.strip()]
        return lines[-1] if lines else ""

    @staticmethod
    def _extract_pr_number(pr_url: str) -> int:
        """Extract PR number from GitHub URL (e.g. .../pull/42 -> 42); 0 if absent."""
        tail = pr_url.rstrip("/").split("/")[-1]
        try:
            return int(tail)
        except ValueError:
            return 0

