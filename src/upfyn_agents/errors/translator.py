"""Translate orchestration errors to user-friendly messages."""

import re
from dataclasses import dataclass
from typing import List, Optional


@dataclass
class UserFriendlyError:
    """User-friendly error representation."""
    original_error: Exception
    title: str
    explanation: str
    actions: List[str]
    documentation: Optional[str] = None
    show_technical: bool = False


class ErrorTranslator:
    """Translate technical errors to user-friendly messages."""

    ERROR_PATTERNS = {
        # tmux server refuses duplicate session names
        r"SpawnFailure.*duplicate session": {
            "title": "Agent session already exists",
            "explanation": "A session with this name is already running on the upfyn tmux server.",
            "actions": [
                "List sessions: upfyn sessions",
                "Attach to it: upfyn attach <task-id>",
                "Or delete the task to kill the old session",
            ],
        },

        r"SpawnFailure": {
            "title": "Could not start the agent session",
            "explanation": "The session backend failed to launch the agent process. The task was not moved.",
            "actions": [
                "Check the agent CLI is installed: upfyn agents",
                "Check tmux works: tmux -V",
                "Force a backend with UPFYN_SESSION_BACKEND=shell",
            ],
        },

        r"WorktreeCreationFailure.*already checked out|WorktreeCreationFailure.*already exists": {
            "title": "Branch is checked out elsewhere",
            "explanation": "git will not create the task worktree because its branch is in use by another worktree.",
            "actions": [
                "List worktrees: git worktree list",
                "Remove the stale one: git worktree remove --force <path>",
                "Then retry the move",
            ],
        },

        r"WorktreeCreationFailure": {
            "title": "Could not create the task worktree",
            "explanation": "git failed while creating an isolated checkout for this task. The task was not moved.",
            "actions": [
                "Make sure the repository has at least one commit",
                "Run: git worktree prune",
                "Check the repository is not in the middle of a rebase or merge",
            ],
        },

        # gh auth errors
        r"PrCreationFailure.*(auth|401|credentials)": {
            "title": "GitHub authentication failed",
            "explanation": "The gh CLI is not logged in or lacks permission to push or open pull requests.",
            "actions": [
                "Log in: gh auth login",
                "Check access: gh auth status",
            ],
        },

        r"PrCreationFailure": {
            "title": "Could not open the pull request",
            "explanation": "Pushing the branch or creating the pull request failed. The task stays in running.",
            "actions": [
                "Check the remote is configured: git remote -v",
                "Retry the move, or move without a PR",
            ],
        },

        r"InvalidTransition": {
            "title": "Move not allowed",
            "explanation": "Tasks move one column at a time; the only backward move is review -> running.",
            "actions": [
                "Use 'upfyn move' to advance one step",
                "Use 'upfyn back' to resume a task in review",
            ],
        },

        r"TaskNotFound": {
            "title": "Unknown task",
            "explanation": "No task matches that id in this project.",
            "actions": ["List tasks: upfyn board"],
        },
    }

    def translate(self, error: Exception) -> UserFriendlyError:
        """Convert exception to user-friendly format."""
        error_str = str(error)
        error_type = type(error).__name__
        full_error = f"{error_type}: {error_str}"

        for pattern, translation in self.ERROR_PATTERNS.items():
            if re.search(pattern, full_error, re.IGNORECASE | re.DOTALL):
                return UserFriendlyError(
                    original_error=error,
                    title=translation["title"],
                    explanation=translation["explanation"],
                    actions=translation["actions"],
                    documentation=translation.get("documentation"),
                    show_technical=True,
                )

        # Fallback for unknown errors
        return UserFriendlyError(
            original_error=error,
            title="Unexpected error",
            explanation=str(error),
            actions=["Check the log: upfyn.log in the config directory"],
            show_technical=False,
        )

    def format_for_cli(self, friendly_error: UserFriendlyError) -> str:
        """Format error for CLI display (rich markup)."""
        output = f"[bold red]{friendly_error.title}[/]\n\n"
        output += f"{friendly_error.explanation}\n\n"

        output += "[bold]How to fix:[/]\n"
        for i, action in enumerate(friendly_error.actions, 1):
            output += f"  {i}. {action}\n"

        if friendly_error.documentation:
            output += f"\n[dim]Learn more: {friendly_error.documentation}[/]"

        if friendly_error.show_technical:
            output += f"\n[dim]Technical details:[/]\n[dim]{friendly_error.original_error}[/]"

        return output
