"""Git worktrees for isolated task checkouts."""

from .worktree_manager import WorktreeManager

__all__ = ["WorktreeManager"]
